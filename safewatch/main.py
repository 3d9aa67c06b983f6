from safewatch.app import SafeWatchApp
from safewatch.logging_setup import setup_logging


def main() -> None:
    logger = setup_logging()
    SafeWatchApp(logger).run()


if __name__ == "__main__":
    main()
