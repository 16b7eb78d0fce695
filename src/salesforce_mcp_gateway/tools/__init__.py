# Salesforce tool implementations, each taking the shared connection first

from .base import format_result, run_blocking, salesforce_error_message
from .metadata import get_object_metadata, simplify_describe
from .query import DEFAULT_SEARCH_OBJECTS, build_sosl_search, execute_soql_query, search_records
from .records import build_update_payload, check_save_results, create_record, update_record

__all__ = [
    # Query & search
    "execute_soql_query",
    "search_records",
    "build_sosl_search",
    "DEFAULT_SEARCH_OBJECTS",

    # Metadata
    "get_object_metadata",
    "simplify_describe",

    # Records
    "create_record",
    "update_record",
    "build_update_payload",
    "check_save_results",

    # Base
    "format_result",
    "run_blocking",
    "salesforce_error_message",
]
