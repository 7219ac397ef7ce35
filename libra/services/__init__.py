"""Domain services and persistence collaborators."""
