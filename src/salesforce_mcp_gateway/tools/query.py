import logging
from typing import Any, Dict, List, Optional

from simple_salesforce import Salesforce

from .base import as_dict, run_blocking

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_SEARCH_OBJECTS = ("Account", "Contact", "Opportunity")


async def execute_soql_query(sf: Salesforce, query: str) -> Dict[str, Any]:
    """Execute a SOQL query. The query text is passed through unmodified."""
    logger.info(f"Executing tool: soql_query with query: {query}")
    result = await run_blocking(sf.query, query)
    return {
        "totalSize": result.get("totalSize", 0),
        "done": result.get("done", True),
        "records": as_dict(result.get("records", [])),
    }


def build_sosl_search(search_term: str, objects: Optional[List[str]] = None) -> str:
    # search_term is interpolated as-is, like the SOQL passthrough
    targets = list(DEFAULT_SEARCH_OBJECTS) if objects is None else list(objects)
    return f"FIND {{{search_term}}} IN ALL FIELDS RETURNING {', '.join(targets)}"


async def search_records(sf: Salesforce, search_term: str, objects: Optional[List[str]] = None) -> Dict[str, Any]:
    """Full-text search across objects using SOSL."""
    sosl = build_sosl_search(search_term, objects)
    logger.info(f"Executing tool: search_records with sosl: {sosl}")
    result = await run_blocking(sf.search, sosl)
    return as_dict(result)
