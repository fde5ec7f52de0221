"""Allow ``python -m korero``."""

from korero.cli import main

if __name__ == "__main__":
    main()
