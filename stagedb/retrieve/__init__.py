"""Query-side guards and value reassembly."""
