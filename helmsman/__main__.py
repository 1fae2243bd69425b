"""Run the helmsman command line tool with `python -m helmsman`."""

from .tool.helmsman import main

if __name__ == "__main__":
    main()
