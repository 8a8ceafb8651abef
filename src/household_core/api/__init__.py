"""HTTP surface for Household Core."""
