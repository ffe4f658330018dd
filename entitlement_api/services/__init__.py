"""Background services run by the API process."""
