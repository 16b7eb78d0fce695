import json
import logging
from functools import partial
from typing import Any, Callable, Dict, TypeVar

import anyio
from simple_salesforce.exceptions import SalesforceError

# Configure logging
logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking simple_salesforce call without stalling the event loop."""
    return await anyio.to_thread.run_sync(partial(func, *args, **kwargs))


def salesforce_error_message(e: Exception) -> str:
    """Extract the most meaningful message text from a backend error."""
    if isinstance(e, SalesforceError):
        content = getattr(e, "content", None)
        if isinstance(content, list) and content:
            first = content[0]
            if isinstance(first, dict) and first.get("message"):
                return first["message"]
        if isinstance(content, dict) and content.get("message"):
            return content["message"]
    return str(e)


def format_result(result: Any) -> str:
    return json.dumps(result, indent=2, default=str)


def as_dict(result: Any) -> Dict[str, Any]:
    # simple_salesforce returns OrderedDicts
    return json.loads(json.dumps(result, default=str))
