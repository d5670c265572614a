"""Protocol pieces: schema, registry, sessions, dispatcher and method routing."""
