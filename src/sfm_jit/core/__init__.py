"""Keys, values, factors and the factor graph."""
