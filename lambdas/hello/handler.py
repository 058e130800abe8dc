import json
import logging
import os

import requests

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))


def handler(event, context):
    greeting = os.environ.get("GREETING", "hello")
    name = (event or {}).get("name", "world")
    logger.info(f"Greeting {name} with requests {requests.__version__}")
    return {
        "statusCode": 200,
        "body": json.dumps({"message": f"{greeting}, {name}"}),
    }
