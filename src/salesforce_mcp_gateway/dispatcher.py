import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import mcp.types as types
from mcp.server.lowlevel import Server

from . import __version__
from .connection import SalesforceConnectionProvider
from .errors import GatewayError, UnknownToolError
from .tools import (
    create_record,
    execute_soql_query,
    format_result,
    get_object_metadata,
    salesforce_error_message,
    search_records,
    update_record,
)

# Configure logging
logger = logging.getLogger(__name__)

SERVER_NAME = "salesforce-mcp"


class ToolKind(Enum):
    SOQL_QUERY = "soql_query"
    GET_OBJECT_METADATA = "get_object_metadata"
    CREATE_RECORD = "create_record"
    UPDATE_RECORD = "update_record"
    SEARCH_RECORDS = "search_records"

    @classmethod
    def from_name(cls, name: str) -> "ToolKind":
        try:
            return cls(name)
        except ValueError:
            raise UnknownToolError(name) from None


@dataclass(frozen=True)
class ToolDescriptor:
    kind: ToolKind
    description: str
    input_schema: Dict[str, Any]
    read_only: bool = False

    @property
    def name(self) -> str:
        return self.kind.value

    def to_tool(self) -> types.Tool:
        return types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_schema,
            annotations=types.ToolAnnotations(readOnlyHint=self.read_only),
        )


TOOLS = (
    ToolDescriptor(
        kind=ToolKind.SOQL_QUERY,
        description="Execute a SOQL query against Salesforce",
        input_schema={
            "type": "object",
            "required": ["query"],
            "properties": {
                "query": {"type": "string", "description": "SOQL query string"}
            }
        },
        read_only=True,
    ),
    ToolDescriptor(
        kind=ToolKind.GET_OBJECT_METADATA,
        description="Get metadata for a Salesforce object",
        input_schema={
            "type": "object",
            "required": ["objectName"],
            "properties": {
                "objectName": {"type": "string", "description": "API name of the object (e.g., Account, Contact)"}
            }
        },
        read_only=True,
    ),
    ToolDescriptor(
        kind=ToolKind.CREATE_RECORD,
        description="Create a new record in Salesforce",
        input_schema={
            "type": "object",
            "required": ["objectName", "data"],
            "properties": {
                "objectName": {"type": "string", "description": "API name of the object"},
                "data": {"type": "object", "description": "Field values for the new record"}
            }
        },
    ),
    ToolDescriptor(
        kind=ToolKind.UPDATE_RECORD,
        description="Update an existing Salesforce record",
        input_schema={
            "type": "object",
            "required": ["objectName", "recordId", "data"],
            "properties": {
                "objectName": {"type": "string", "description": "API name of the object"},
                "recordId": {"type": "string", "description": "Salesforce record ID"},
                "data": {"type": "object", "description": "Field values to update"}
            }
        },
    ),
    ToolDescriptor(
        kind=ToolKind.SEARCH_RECORDS,
        description="Search Salesforce using SOSL",
        input_schema={
            "type": "object",
            "required": ["searchTerm"],
            "properties": {
                "searchTerm": {"type": "string", "description": "Search term"},
                "objects": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Objects to search (e.g., [\"Account\", \"Contact\"])"
                }
            }
        },
        read_only=True,
    ),
)


def list_tools() -> List[types.Tool]:
    return [descriptor.to_tool() for descriptor in TOOLS]


def _text_result(text: str, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=is_error,
    )


async def _execute(kind: ToolKind, arguments: Dict[str, Any], provider: SalesforceConnectionProvider) -> Any:
    sf = await provider.get_connection()

    if kind is ToolKind.SOQL_QUERY:
        return await execute_soql_query(sf, arguments["query"])
    elif kind is ToolKind.GET_OBJECT_METADATA:
        return await get_object_metadata(sf, arguments["objectName"])
    elif kind is ToolKind.CREATE_RECORD:
        return await create_record(sf, arguments["objectName"], arguments["data"])
    elif kind is ToolKind.UPDATE_RECORD:
        return await update_record(sf, arguments["objectName"], arguments["recordId"], arguments["data"])
    elif kind is ToolKind.SEARCH_RECORDS:
        return await search_records(sf, arguments["searchTerm"], arguments.get("objects"))
    raise UnknownToolError(kind.value)


async def call_tool(
    name: str,
    arguments: Optional[Dict[str, Any]],
    provider: SalesforceConnectionProvider,
) -> types.CallToolResult:
    """Run a tool and render every outcome, including failures, as a content envelope."""
    try:
        kind = ToolKind.from_name(name)
    except UnknownToolError as e:
        logger.warning(e.message)
        return _text_result(e.message, is_error=True)

    try:
        result = await _execute(kind, arguments or {}, provider)
    except GatewayError as e:
        logger.error(f"Error executing tool {name} ({e.kind.value}): {e.message}")
        return _text_result(f"Error: {e.message}", is_error=True)
    except Exception as e:
        logger.exception(f"Error executing tool {name}: {e}")
        return _text_result(f"Error: {salesforce_error_message(e)}", is_error=True)

    return _text_result(format_result(result))


def create_mcp_server(provider: SalesforceConnectionProvider) -> Server:
    """Build a fresh protocol server for one session, sharing the upstream provider."""
    app = Server(SERVER_NAME, version=__version__)

    @app.list_tools()
    async def handle_list_tools() -> list[types.Tool]:
        return list_tools()

    @app.call_tool()
    async def handle_call_tool(name: str, arguments: dict) -> types.CallToolResult:
        return await call_tool(name, arguments, provider)

    return app
