"""procbox command line interface."""
