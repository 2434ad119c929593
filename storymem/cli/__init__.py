"""CLI module for storymem."""
