"""Document → relational staging plan → rows."""
