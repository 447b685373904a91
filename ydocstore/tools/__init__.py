"""Command-line tools for ydocstore."""
