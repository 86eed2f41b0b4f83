"""Release records, hosting clients and asset publishing."""
