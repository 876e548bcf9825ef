import sys

from loguru import logger

from edev.bootstrap import build_app
from edev.config.settings import SettingsError
from edev.db.errors import StorageError


def main() -> int:
    try:
        app = build_app()
    except SettingsError as e:
        logger.error("Invalid configuration: {}", e)
        return 2
    except StorageError as e:
        logger.error("Database unavailable: {}", e)
        return 1

    settings = app["settings"]
    logger.info(
        "Service started (version={}, env={}, address={}, fake_oauth={})",
        settings.git_tag,
        settings.app_env,
        settings.address,
        settings.fake_oauth_enabled,
    )
    app["runner"].run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
