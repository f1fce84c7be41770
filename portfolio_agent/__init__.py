"""Natural-language portfolio mutation agent."""
