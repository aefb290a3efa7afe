"""``python -m ocisync_cli`` and the ``ocisync`` console script."""


def main() -> int:
    from .main import main as cli_main

    return cli_main()


if __name__ == "__main__":
    raise SystemExit(main())
