import logging

import pythonjsonlogger.jsonlogger


def configure_logging(level: int = logging.DEBUG) -> None:
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        pythonjsonlogger.jsonlogger.JsonFormatter(
            "%(asctime)s %(funcName)s %(levelname)s %(lineno)d %(message)s %(name)s %(pathname)s",
            rename_fields={
                "levelname": "level",
                "asctime": "timestamp",
                "lineno": "line",
                "funcName": "function",
                "pathname": "path",
            },
        )
    )

    logging.basicConfig(handlers=[console_handler], level=level, force=True)

    # botocore logs request bodies at debug, which would include decrypted secrets
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
