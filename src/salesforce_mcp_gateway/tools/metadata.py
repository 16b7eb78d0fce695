import logging
from typing import Any, Dict

from simple_salesforce import Salesforce

from .base import run_blocking

# Configure logging
logger = logging.getLogger(__name__)


def simplify_describe(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Project a describe result down to name, label and per-field requiredness."""
    return {
        "name": metadata.get("name"),
        "label": metadata.get("label"),
        "fields": [
            {
                "name": field.get("name"),
                "label": field.get("label"),
                "type": field.get("type"),
                "required": not field.get("nillable", False),
            }
            for field in metadata.get("fields", [])
        ],
    }


async def get_object_metadata(sf: Salesforce, object_name: str) -> Dict[str, Any]:
    """Describe a Salesforce object."""
    logger.info(f"Executing tool: get_object_metadata with object_name: {object_name}")
    sobject = getattr(sf, object_name)
    metadata = await run_blocking(sobject.describe)
    return simplify_describe(metadata)
