from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Process-wide collectors; created once at import so repeated create_app() calls
# (tests) do not try to register them twice.
REQUEST_COUNT = Counter('app_requests_total', 'Total HTTP requests', ['method', 'path', 'status'])
REQ_LATENCY = Histogram('app_request_latency_ms', 'Request latency in ms', ['method', 'path'])
WS_CONNECTIONS = Counter('ws_connections_total', 'Total WS connections opened')
ACTIVE_WS = Gauge('ws_active', 'Active WebSocket connections')
SIGNAL_EVENTS = Counter('signal_events_total', 'Inbound signaling messages handled', ['kind'])
SIGNAL_ERRORS = Counter('signal_errors_total', 'Signaling errors reported to clients', ['code'])
PRESENCE_ONLINE = Gauge('presence_online', 'Identities currently logged in')
ACTIVE_CALLS = Gauge('calls_active', 'Active (ringing or connected) call sessions')
PENDING_INVITES = Gauge('call_invites_pending', 'Pending conference invites')
