"""Final-artifact assembly helpers: layout, identity, permissions, export."""
