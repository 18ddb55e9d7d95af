from prometheus_client import Counter, Gauge, Histogram

EVENTS_INGESTED = Counter(
    "dashboard_events_ingested_total",
    "Broker messages seen by the ingestion router, by outcome",
    labelnames=["topic", "outcome"],
)

EVENT_HANDLING_SECONDS = Histogram(
    "dashboard_event_handling_seconds",
    "Time spent applying one event to the aggregation store",
    labelnames=["topic"],
)

CACHE_LOOKUPS = Counter(
    "dashboard_cache_lookups_total",
    "Cache lookups by result",
    labelnames=["result"],
)

LIVE_CONNECTIONS = Gauge(
    "dashboard_live_connections",
    "Open live-update connections",
    labelnames=["transport"],
)

LIVE_MESSAGES_DROPPED = Counter(
    "dashboard_live_messages_dropped_total",
    "Live-update messages discarded because a connection's buffer was full",
)

NOTIFICATIONS_PUBLISHED = Counter(
    "dashboard_notifications_published_total",
    "Notifications published to the live transports, by kind",
    labelnames=["kind"],
)

QUERY_EXECUTIONS = Counter(
    "dashboard_query_executions_total",
    "Ad-hoc downstream queries, by type and outcome",
    labelnames=["query_type", "outcome"],
)
