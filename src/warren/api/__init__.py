"""rest api for local frontends."""
