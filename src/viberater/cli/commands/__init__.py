"""CLI command modules for viberater."""
