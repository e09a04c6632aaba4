"""TableStream MCP server entry point.

Loads the CSV dataset, then serves ``dbQueryTool`` either over HTTP (session
registry, SSE streaming) or over stdio through FastMCP (buffered results).
"""

import argparse
import json
import sys
from typing import List, Optional

import uvicorn
from fastmcp import FastMCP

from . import __version__
from .config_manager import ConfigManager, TransportType, initialize_config
from .endpoint import QueryEndpoint
from .error_handler import StoreLoadError
from .http_transport import create_app
from .logging_manager import LoggingManager, get_logger, get_logging_manager
from .models import EMPLOYEE_SCHEMA
from .query_tool import DbQueryTool
from .session_registry import SessionRegistry
from .store import TabularStore

logger = get_logger(__name__)

mcp = FastMCP("TableStream MCP - streaming SQL queries over a CSV employee table")

_tool: Optional[DbQueryTool] = None


def _require_tool() -> DbQueryTool:
    if _tool is None:
        raise RuntimeError("TableStream MCP is not initialized; start it through main()")
    return _tool


@mcp.tool(name="dbQueryTool")
def db_query_tool(sql: str, limit: Optional[int] = None) -> str:
    """
    Execute a SQL SELECT query against the employees table with chunked results.

    Args:
        sql: SQL SELECT query to execute against the employees table.
        limit: Optional maximum number of rows (1-10000). Ignored when the query has its own LIMIT.

    Returns:
        JSON document holding the ordered query_start, data_chunk and
        query_complete (or query_error) events.
    """
    arguments = {'sql': sql}
    if limit is not None:
        arguments['limit'] = limit
    return _require_tool().execute(arguments)


@mcp.tool
def get_schema() -> str:
    """
    Describe the employees table: column names and types, five sample rows and example queries.
    """
    return json.dumps(_require_tool().get_schema(), indent=2)


def build_tool(config_manager: ConfigManager, logging_manager: LoggingManager) -> DbQueryTool:
    """Load the dataset and build the query tool.

    Raises:
        StoreLoadError: the CSV file could not be loaded
    """
    server_config = config_manager.get_server_config()
    store = TabularStore.from_csv(server_config.csv_path, EMPLOYEE_SCHEMA, server_config.table_name)
    return DbQueryTool(store, config=config_manager.get_streaming_config(),
                       logging_manager=logging_manager)


def build_registry(tool: DbQueryTool, config_manager: ConfigManager,
                   logging_manager: LoggingManager) -> SessionRegistry:
    session_config = config_manager.get_session_config()
    return SessionRegistry(
        lambda session_id: QueryEndpoint(tool, session_id),
        ttl_seconds=session_config.ttl_seconds,
        sweep_interval=session_config.sweep_interval_seconds,
        logging_manager=logging_manager,
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='tablestream-mcp',
        description='Serve a CSV table to MCP clients with chunked, streamed query results.')
    parser.add_argument('--config', help='Path to a YAML configuration file')
    parser.add_argument('--transport', choices=[t.value for t in TransportType],
                        help='Transport to serve (default: http)')
    parser.add_argument('--host', help='HTTP listen address')
    parser.add_argument('--port', type=int, help='HTTP listen port')
    parser.add_argument('--csv', dest='csv_path', help='CSV file to load')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with structured logging initialization."""
    global _tool

    args = parse_args(argv)
    config_manager = initialize_config(args.config)
    config_manager.override('server', host=args.host, port=args.port,
                            csv_path=args.csv_path, transport=args.transport)
    server_config = config_manager.get_server_config()
    logging_manager = get_logging_manager(config_manager.get_logging_config())

    with logging_manager.context(operation="system_startup", component="server"):
        logger.info("TableStream MCP starting up",
                    version=__version__,
                    transport=server_config.transport.value,
                    csv_path=server_config.csv_path,
                    config_file=config_manager.loaded_file)

    try:
        _tool = build_tool(config_manager, logging_manager)
    except StoreLoadError as e:
        logging_manager.log_error(e, "server", operation="system_startup")
        return 1

    try:
        if server_config.transport is TransportType.STDIO:
            logger.info("TableStream MCP ready", transport="stdio")
            mcp.run(transport="stdio")
            return 0

        registry = build_registry(_tool, config_manager, logging_manager)
        app = create_app(_tool, registry, logging_manager)
        registry.start()
        logger.info("TableStream MCP ready",
                    transport="http",
                    endpoint=f"http://{server_config.host}:{server_config.port}/mcp")
        try:
            uvicorn.run(app, host=server_config.host, port=server_config.port, log_config=None)
        finally:
            registry.stop()
            closed = registry.close_all()
            logger.info("TableStream MCP stopped", sessions_closed=closed)
        return 0
    finally:
        _tool.store.close()


if __name__ == "__main__":
    sys.exit(main())
