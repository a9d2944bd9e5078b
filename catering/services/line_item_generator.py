"""
Canonical line-item generation from quote facts.

The generated set is a pure function of the quote: one item per menu
selection, one service-type item and one item per requested add-on.
Every item carries a stable ``source_key`` (``category:slug``) so that
reconciliation can match regenerated items to persisted ones without
relying on display titles.

Prices are catalogue prices in cents; menu items are priced per guest.
"""

import logging
import math
import re
from dataclasses import asdict, dataclass

logger = logging.getLogger(__name__)

# ── Catalogue (cents) ────────────────────────────────────────────────────────

MENU_PRICES = {
    "proteins": {
        "fried_chicken": 1400, "baked_chicken": 1300, "bbq_chicken": 1400,
        "catfish": 1600, "salmon": 1900, "brisket": 1800, "pulled_pork": 1500,
        "smoked_turkey": 1500, "ribs": 1800, "shrimp": 1900,
    },
    "appetizers": {
        "deviled_eggs": 300, "meatballs": 400, "chicken_wings": 500,
        "fruit_tray": 350, "vegetable_tray": 300, "charcuterie": 650,
    },
    "sides": {
        "mac_and_cheese": 350, "collard_greens": 300, "green_beans": 250,
        "potato_salad": 250, "coleslaw": 200, "cornbread": 200,
        "baked_beans": 250, "rice_and_gravy": 250,
    },
    "desserts": {
        "peach_cobbler": 400, "banana_pudding": 350, "pound_cake": 350,
        "sweet_potato_pie": 400,
    },
    "drinks": {
        "sweet_tea": 150, "lemonade": 150, "water": 100, "coffee": 200,
    },
}

DEFAULT_MENU_PRICES = {
    "proteins": 1500,
    "appetizers": 400,
    "sides": 250,
    "desserts": 350,
    "drinks": 150,
}

CATEGORY_LABELS = {
    "proteins": "Protein",
    "appetizers": "Appetizer",
    "sides": "Side",
    "desserts": "Dessert",
    "drinks": "Drink",
}

SERVICE_TYPE_LABELS = {
    "drop-off": "Drop-Off Delivery",
    "delivery-only": "Delivery Only",
    "delivery-setup": "Delivery & Setup",
    "full-service": "Full-Service Catering",
}

SERVICE_TYPE_PRICES = {
    "drop-off": 5000,
    "delivery-only": 7500,
    "delivery-setup": 15000,
    "full-service": 35000,
}

WAIT_STAFF_GUESTS_PER_STAFF = 25
WAIT_STAFF_HOURS = 4
WAIT_STAFF_HOURLY_RATE = 3500
CEREMONY_PRICE = 25000
COCKTAIL_HOUR_PRICE = 30000
SUPPLY_PRICE_PER_KIND = 50
CHAFER_PRICE = 2500
ICE_PRICE = 4000

SUPPLY_FLAGS = {
    "plates_requested": "Plates",
    "cups_requested": "Cups",
    "napkins_requested": "Napkins",
    "serving_utensils_requested": "Serving Utensils",
}

# add-on flag -> source_key of the item it drives
ADDON_KEYS = {
    "wait_staff_requested": "addon:wait_staff",
    "ceremony_included": "addon:ceremony",
    "cocktail_hour": "addon:cocktail_hour",
    "plates_requested": "addon:disposable_supplies",
    "cups_requested": "addon:disposable_supplies",
    "napkins_requested": "addon:disposable_supplies",
    "serving_utensils_requested": "addon:disposable_supplies",
    "chafers_requested": "addon:chafers",
    "ice_requested": "addon:ice",
}

ADDON_TITLES = {
    "addon:wait_staff": "Wait Staff Service",
    "addon:ceremony": "Ceremony Service",
    "addon:cocktail_hour": "Cocktail Hour Service",
    "addon:disposable_supplies": "Disposable Supplies",
    "addon:chafers": "Chafer Rental",
    "addon:ice": "Ice Service",
}

_SLUG_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class CanonicalItem:
    source_key: str
    title: str
    description: str
    category: str
    quantity: int
    unit_price: int

    @property
    def total_price(self) -> int:
        return self.quantity * self.unit_price

    def to_dict(self) -> dict:
        d = asdict(self)
        d["total_price"] = self.total_price
        return d


def slugify(value: str) -> str:
    """'Fried Chicken' / 'fried-chicken' / 'fried_chicken' → 'fried_chicken'."""
    return _SLUG_RE.sub("_", str(value).strip().lower()).strip("_")


def format_menu_item(slug: str) -> str:
    """'fried_chicken' → 'Fried Chicken'."""
    return " ".join(w[:1].upper() + w[1:] for w in slugify(slug).split("_") if w)


def format_service_type(service_type: str) -> str:
    return SERVICE_TYPE_LABELS.get(service_type, service_type)


def menu_source_key(category: str, selection: str) -> str:
    return f"{category}:{slugify(selection)}"


def service_source_key(service_type: str) -> str:
    return f"service:{service_type}"


def menu_price(category: str, slug: str) -> int:
    return MENU_PRICES.get(category, {}).get(slug, DEFAULT_MENU_PRICES.get(category, 0))


def _protein_quantities(proteins: list[str], guests: int, both_available: bool) -> list[int]:
    if not proteins:
        return []
    if both_available:
        return [guests] * len(proteins)
    share, remainder = divmod(guests, len(proteins))
    return [share + (remainder if i == 0 else 0) for i in range(len(proteins))]


def generate_line_items(quote) -> list[CanonicalItem]:
    """Full canonical item set for a quote, in display order."""
    guests = max(0, int(quote.guest_count or 0))
    items: list[CanonicalItem] = []

    proteins = [slugify(p) for p in (quote.proteins or [])]
    for slug, qty in zip(proteins, _protein_quantities(proteins, guests, quote.both_proteins_available)):
        items.append(CanonicalItem(
            source_key=menu_source_key("proteins", slug),
            title=format_menu_item(slug),
            description=f"Protein, {qty} servings",
            category=CATEGORY_LABELS["proteins"],
            quantity=qty,
            unit_price=menu_price("proteins", slug),
        ))

    for category in ("appetizers", "sides", "desserts", "drinks"):
        for selection in getattr(quote, category) or []:
            slug = slugify(selection)
            items.append(CanonicalItem(
                source_key=menu_source_key(category, slug),
                title=format_menu_item(slug),
                description=f"{CATEGORY_LABELS[category]} for {guests} guests",
                category=CATEGORY_LABELS[category],
                quantity=guests,
                unit_price=menu_price(category, slug),
            ))

    service_type = quote.service_type or "drop-off"
    items.append(CanonicalItem(
        source_key=service_source_key(service_type),
        title=format_service_type(service_type),
        description=f"Service for {guests} guests",
        category="Service",
        quantity=1,
        unit_price=SERVICE_TYPE_PRICES.get(service_type, 0),
    ))

    if quote.wait_staff_requested:
        staff = math.ceil(guests / WAIT_STAFF_GUESTS_PER_STAFF)
        items.append(CanonicalItem(
            source_key=ADDON_KEYS["wait_staff_requested"],
            title=ADDON_TITLES["addon:wait_staff"],
            description=f"Estimated {staff} staff members for {WAIT_STAFF_HOURS} hours",
            category="Service",
            quantity=staff * WAIT_STAFF_HOURS,
            unit_price=WAIT_STAFF_HOURLY_RATE,
        ))

    if quote.ceremony_included:
        items.append(CanonicalItem(
            source_key=ADDON_KEYS["ceremony_included"],
            title=ADDON_TITLES["addon:ceremony"],
            description="Food service during ceremony",
            category="Service",
            quantity=1,
            unit_price=CEREMONY_PRICE,
        ))

    if quote.cocktail_hour:
        items.append(CanonicalItem(
            source_key=ADDON_KEYS["cocktail_hour"],
            title=ADDON_TITLES["addon:cocktail_hour"],
            description="Pre-reception cocktail hour catering",
            category="Service",
            quantity=1,
            unit_price=COCKTAIL_HOUR_PRICE,
        ))

    supplies = [label for flag, label in SUPPLY_FLAGS.items() if getattr(quote, flag)]
    if supplies:
        items.append(CanonicalItem(
            source_key=ADDON_KEYS["plates_requested"],
            title=ADDON_TITLES["addon:disposable_supplies"],
            description=f"{', '.join(supplies)} for {guests} guests",
            category="Supplies",
            quantity=guests,
            unit_price=SUPPLY_PRICE_PER_KIND * len(supplies),
        ))

    if quote.chafers_requested:
        chafers = math.ceil(len(quote.sides or []) / 2)
        if chafers:
            items.append(CanonicalItem(
                source_key=ADDON_KEYS["chafers_requested"],
                title=ADDON_TITLES["addon:chafers"],
                description=f"{chafers} chafers for buffet service",
                category="Equipment",
                quantity=chafers,
                unit_price=CHAFER_PRICE,
            ))

    if quote.ice_requested:
        items.append(CanonicalItem(
            source_key=ADDON_KEYS["ice_requested"],
            title=ADDON_TITLES["addon:ice"],
            description="Ice for beverages",
            category="Supplies",
            quantity=1,
            unit_price=ICE_PRICE,
        ))

    logger.debug("Generated %d canonical items for quote %s", len(items), quote.id,
                 extra={"quote_id": quote.id})
    return items
