"""HTTP surface for Todo Studio."""
