"""
Prometheus metrics for API service.

Tracks WebSocket connections, realtime events and messaging business
metrics. Registered on the default registry so the instrumentator's
/metrics endpoint exposes them next to the HTTP metrics.
"""
from prometheus_client import Counter, Histogram, Gauge

# WebSocket connection metrics
websocket_connections_active = Gauge(
    "websocket_connections_active",
    "Number of active WebSocket connections",
    labelnames=["instance"]
)

websocket_connections_total = Counter(
    "websocket_connections_total",
    "Total number of WebSocket connections established",
    labelnames=["instance"]
)

websocket_connections_rejected_total = Counter(
    "websocket_connections_rejected_total",
    "Total number of WebSocket handshakes refused",
    labelnames=["reason", "instance"]
)

websocket_disconnections_total = Counter(
    "websocket_disconnections_total",
    "Total number of WebSocket disconnections",
    labelnames=["instance", "reason"]
)

websocket_messages_sent_total = Counter(
    "websocket_messages_sent_total",
    "Total number of events sent via WebSocket",
    labelnames=["message_type", "instance"]
)

websocket_messages_received_total = Counter(
    "websocket_messages_received_total",
    "Total number of events received via WebSocket",
    labelnames=["action", "instance"]
)

websocket_rooms_joined = Gauge(
    "websocket_rooms_joined",
    "Total number of active chat room memberships",
    labelnames=["instance"]
)

websocket_users_connected = Gauge(
    "websocket_users_connected",
    "Number of unique users currently connected",
    labelnames=["instance"]
)

# Messaging business metrics
messages_created_total = Counter(
    "messages_created_total",
    "Total number of messages created",
    labelnames=["chat_type", "source", "instance"]
)

messages_duplicates_suppressed_total = Counter(
    "messages_duplicates_suppressed_total",
    "Total number of sends dropped as duplicates",
    labelnames=["source", "instance"]
)

message_send_duration_seconds = Histogram(
    "message_send_duration_seconds",
    "Time to validate and persist a message",
    labelnames=["source", "instance"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0]
)

# Authentication metrics
auth_requests_total = Counter(
    "auth_requests_total",
    "Total number of authentication requests",
    labelnames=["type", "status", "instance"]
)

# File upload metrics
file_uploads_total = Counter(
    "file_uploads_total",
    "Total number of file uploads",
    labelnames=["status", "instance"]
)

file_upload_size_bytes = Histogram(
    "file_upload_size_bytes",
    "Size of uploaded files in bytes",
    labelnames=["instance"],
    buckets=[1024, 10240, 102400, 1048576, 5242880, 10485760]
)


def update_websocket_metrics(connection_manager):
    """
    Update WebSocket metrics from connection manager state.

    Called by the heartbeat monitor on every cycle.

    Args:
        connection_manager: ConnectionManager instance
    """
    websocket_connections_active.labels(instance="api").set(connection_manager.get_connection_count())
    websocket_users_connected.labels(instance="api").set(connection_manager.get_user_count())
    websocket_rooms_joined.labels(instance="api").set(
        sum(len(rooms) for rooms in connection_manager.connection_rooms.values())
    )
