"""HTTP surface for runplane."""
