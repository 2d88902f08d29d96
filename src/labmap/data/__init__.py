"""Built-in seed vocabularies."""
