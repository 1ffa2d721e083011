"""pitwall: keeps a Discord channel in sync with a motorsport race calendar."""
