"""Templates usados pela CLI."""
