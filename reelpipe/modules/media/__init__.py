"""Media assets, renditions and their processing state."""
