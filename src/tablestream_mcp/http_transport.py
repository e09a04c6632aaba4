"""HTTP transport: JSON-RPC over ``POST /mcp`` plus the introspection routes.

``tools/call`` answers with an SSE stream when the client accepts
``text/event-stream``: every chunk event goes out as a
``notifications/message`` as soon as it is produced, followed by the JSON-RPC
result carrying the terminal event. Otherwise the events are collected and
returned in a single JSON-RPC response.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import psutil
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from sqlalchemy.exc import SQLAlchemyError
from sse_starlette.sse import EventSourceResponse
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool

from . import __version__
from .endpoint import EventStream
from .error_handler import SessionBusyError, SessionNotFoundError, TableStreamError, TransportError
from .logging_manager import LoggingManager, get_logger, get_logging_manager
from .models import ChunkEvent, DataChunk, QueryCompleted, QueryFailed, encode_event, utc_timestamp
from .query_tool import DbQueryTool
from .session_registry import SessionRegistry

logger = get_logger(__name__)

SERVER_NAME = 'tablestream-mcp'
SESSION_HEADER = 'mcp-session-id'
PROTOCOL_VERSION = '2025-03-26'

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SESSION_BUSY = -32000
SESSION_GONE = -32001


def rpc_error(rpc_id: Any, code: int, message: str, status_code: int = 200,
              headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        {'jsonrpc': '2.0', 'id': rpc_id, 'error': {'code': code, 'message': message}},
        status_code=status_code,
        headers=headers,
    )


def rpc_result(rpc_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {'jsonrpc': '2.0', 'id': rpc_id, 'result': result}


def event_notification(event: ChunkEvent) -> Dict[str, Any]:
    return {
        'jsonrpc': '2.0',
        'method': 'notifications/message',
        'params': {'level': 'info', 'logger': 'dbQueryTool', 'data': event.to_wire()},
    }


def summarize(events: List[ChunkEvent]) -> Dict[str, Any]:
    """Totals over an event list, for the ``_meta`` block of a tool result."""
    chunks = [e for e in events if isinstance(e, DataChunk)]
    terminal = events[-1] if events and events[-1].terminal else None
    return {
        'totalEvents': len(events),
        'totalChunks': len(chunks),
        'totalRows': sum(c.rows_in_chunk for c in chunks),
        'completed': isinstance(terminal, QueryCompleted),
    }


def tool_result(events: List[ChunkEvent], meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        'content': [{'type': 'text', 'text': encode_event(event)} for event in events],
        'isError': bool(events) and isinstance(events[-1], QueryFailed),
        '_meta': meta if meta is not None else summarize(events),
    }


async def relay_events(rpc_id: Any, stream: EventStream, session_id: str,
                       logging_manager: LoggingManager):
    """SSE messages for one tool call: a notification per event, then the result.

    Events are pulled on the threadpool one at a time. When the client goes
    away the stream is closed, which cancels the query and frees the session.
    """
    delivered: List[ChunkEvent] = []
    try:
        async for event in iterate_in_threadpool(stream):
            if not event.terminal:
                delivered.append(event)
            yield {'event': 'message', 'data': json.dumps(event_notification(event))}
        terminal = stream.terminal_event
        if terminal is not None:
            meta = summarize(delivered + [terminal])
            result = rpc_result(rpc_id, tool_result([terminal], meta))
            yield {'event': 'message', 'data': json.dumps(result)}
    except (asyncio.CancelledError, GeneratorExit):
        if not stream.done:
            logging_manager.log_error(
                TransportError("Client disconnected during stream", session_id=session_id),
                "http_transport", events_delivered=stream.events_delivered)
        raise
    finally:
        stream.close()


def create_app(tool: DbQueryTool,
               registry: SessionRegistry,
               logging_manager: Optional[LoggingManager] = None) -> FastAPI:
    """Build the FastAPI application around a tool and a session registry."""
    logging_manager = logging_manager or get_logging_manager()

    app = FastAPI(title=SERVER_NAME, version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=['*'],
        allow_methods=['*'],
        allow_headers=['*'],
        expose_headers=[SESSION_HEADER],
    )
    app.state.tool = tool
    app.state.registry = registry

    async def call_tool(request: Request, rpc_id: Any, params: Dict[str, Any],
                        session_id: str, endpoint, headers: Dict[str, str]):
        name = params.get('name')
        if name != tool.name:
            return rpc_error(rpc_id, INVALID_PARAMS, f"Unknown tool: {name}", headers=headers)
        arguments = params.get('arguments', {})

        try:
            stream = await run_in_threadpool(endpoint.open_stream, arguments)
        except SessionBusyError as e:
            return rpc_error(rpc_id, SESSION_BUSY, e.message, status_code=409, headers=headers)
        except SessionNotFoundError as e:
            return rpc_error(rpc_id, SESSION_GONE, e.message, status_code=404, headers=headers)

        if 'text/event-stream' in request.headers.get('accept', ''):
            return EventSourceResponse(
                relay_events(rpc_id, stream, session_id, logging_manager),
                headers={**headers, 'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
            )

        try:
            events = await run_in_threadpool(list, stream)
        finally:
            stream.close()
        return JSONResponse(rpc_result(rpc_id, tool_result(events)), headers=headers)

    @app.post('/mcp')
    async def mcp_post(request: Request):
        body = await request.body()
        try:
            payload = json.loads(body)
        except ValueError:
            return rpc_error(None, PARSE_ERROR, "Parse error", status_code=400)

        if not isinstance(payload, dict) or payload.get('jsonrpc') != '2.0' \
                or not isinstance(payload.get('method'), str):
            rpc_id = payload.get('id') if isinstance(payload, dict) else None
            return rpc_error(rpc_id, INVALID_REQUEST, "Invalid Request", status_code=400)

        method = payload['method']
        rpc_id = payload.get('id')
        params = payload.get('params') or {}
        if not isinstance(params, dict):
            return rpc_error(rpc_id, INVALID_PARAMS, "params must be an object", status_code=400)

        session_id, endpoint = registry.resolve(request.headers.get(SESSION_HEADER))
        headers = {SESSION_HEADER: session_id}

        logger.debug("JSON-RPC request", method=method, session_id=session_id)
        if method.startswith('notifications/'):
            return Response(status_code=202, headers=headers)

        if method == 'initialize':
            result = {
                'protocolVersion': params.get('protocolVersion', PROTOCOL_VERSION),
                'capabilities': {'tools': {'listChanged': False}, 'logging': {}},
                'serverInfo': {'name': SERVER_NAME, 'version': __version__},
            }
        elif method == 'ping':
            result = {}
        elif method == 'tools/list':
            result = {'tools': endpoint.list_tools()}
        elif method == 'tools/call':
            return await call_tool(request, rpc_id, params, session_id, endpoint, headers)
        else:
            return rpc_error(rpc_id, METHOD_NOT_FOUND, f"Method not found: {method}",
                             headers=headers)

        return JSONResponse(rpc_result(rpc_id, result), headers=headers)

    @app.delete('/mcp/{session_id}')
    async def terminate_session(session_id: str):
        if registry.terminate(session_id):
            return {'success': True, 'message': f"Session {session_id} terminated successfully"}
        return JSONResponse(
            {'success': False, 'message': SessionNotFoundError(session_id).message},
            status_code=404,
        )

    @app.get('/health')
    async def health():
        process = psutil.Process()
        memory = process.memory_info()
        return {
            'status': 'healthy',
            'server': SERVER_NAME,
            'version': __version__,
            'timestamp': utc_timestamp(),
            'activeSessions': registry.active_count(),
            'memory': {
                'rss_mb': round(memory.rss / 1024 / 1024, 1),
                'percent': round(process.memory_percent(), 2),
            },
        }

    @app.get('/schema')
    async def schema():
        try:
            return await run_in_threadpool(tool.get_schema)
        except (TableStreamError, SQLAlchemyError) as e:
            logging_manager.log_error(e, "http_transport", operation="schema")
            return JSONResponse({'error': 'Failed to get schema', 'message': str(e)},
                                status_code=500)

    @app.get('/metrics')
    async def metrics():
        return Response(logging_manager.get_metrics(), media_type=CONTENT_TYPE_LATEST)

    return app
