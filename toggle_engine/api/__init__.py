"""Admin HTTP surface for the toggle engine."""
