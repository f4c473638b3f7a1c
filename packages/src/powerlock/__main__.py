"""Entry point for ``python -m powerlock`` and the ``powerlock`` script."""

from powerlock import PowerLockApp, __version__


def main() -> None:
    PowerLockApp(version=__version__).cli()


if __name__ == "__main__":
    main()
