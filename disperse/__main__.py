"""Entry point for the Disperse CLI when run with ``python -m disperse``."""

from .cli import main

if __name__ == "__main__":  # pragma: no cover
    main()
