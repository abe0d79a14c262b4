"""Command-line entry points: kopsctl and kopsd."""
