"""Business services: pricing, tax, workflow, reconciliation and the change request saga."""
