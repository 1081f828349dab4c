"""cli entrypoint for warren: runs the local api server."""

from .api.server import main


if __name__ == "__main__":
    main()
