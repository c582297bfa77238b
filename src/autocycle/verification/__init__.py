"""Running project test commands and reading their summaries."""
