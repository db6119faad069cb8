"""
Command-Line Interface Layer.

The Typer application, the Rich live progress display and the console
formatters used by its commands.
"""
