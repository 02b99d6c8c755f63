"""Core settlement logic: pricing, checkout, settlement, verification and reconciliation."""
