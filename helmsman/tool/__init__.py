"""Command line tool for helmsman."""
