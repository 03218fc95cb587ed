"""Allow ``python -m buildtree``."""

from buildtree.cli import main

if __name__ == "__main__":
    main()
