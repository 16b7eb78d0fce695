import logging
from typing import Any, Dict, List

from simple_salesforce import Salesforce

from ..errors import ToolExecutionError
from .base import as_dict, run_blocking

# Configure logging
logger = logging.getLogger(__name__)


async def create_record(sf: Salesforce, object_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Create a record; field values are sent unmodified."""
    logger.info(f"Executing tool: create_record on {object_name}")
    sobject = getattr(sf, object_name)
    result = await run_blocking(sobject.create, data)
    return as_dict(result)


def build_update_payload(record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    # recordId always wins over an Id inside data
    payload = dict(data)
    payload["Id"] = record_id
    return payload


def check_save_results(results: List[Dict[str, Any]]) -> None:
    """Raise for any rejected entry; the collections endpoint answers 200 either way."""
    messages = []
    for entry in results:
        if isinstance(entry, dict) and entry.get("success") is False:
            detail = [error.get("message", "") for error in entry.get("errors") or [] if isinstance(error, dict)]
            messages.append("; ".join(m for m in detail if m) or "Update rejected by Salesforce")
    if messages:
        raise ToolExecutionError("; ".join(messages))


async def update_record(sf: Salesforce, object_name: str, record_id: str, data: Dict[str, Any]) -> Any:
    """Update a record through the sObject Collections endpoint, which takes the Id in the body."""
    logger.info(f"Executing tool: update_record on {object_name} with record_id: {record_id}")
    payload = build_update_payload(record_id, data)
    record = {"attributes": {"type": object_name}, **payload}
    result = await run_blocking(
        sf.restful,
        "composite/sobjects",
        method="PATCH",
        json={"allOrNone": True, "records": [record]},
    )
    if isinstance(result, list):
        check_save_results(result)
        # One record in, one result out
        if len(result) == 1:
            return as_dict(result[0])
    return as_dict(result)
