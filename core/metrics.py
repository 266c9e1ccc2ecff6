from prometheus_client import Counter, Gauge, Histogram

DEPLOYMENT_COUNTER = Counter(
    'shipyard_deployments_total',
    'Deployments that reached a terminal status',
    ['status'],
)

DEPLOYMENT_DURATION = Histogram(
    'shipyard_deployment_duration_seconds',
    'Wall-clock time from deploy request to terminal status',
    buckets=(5, 15, 30, 60, 120, 300, 600, 1200, 1800),
)

WEBHOOK_COUNTER = Counter(
    'shipyard_webhooks_total',
    'Push webhooks accepted',
)

ALLOCATED_PORTS_GAUGE = Gauge(
    'shipyard_allocated_ports',
    'Number of host ports currently allocated to applications'
)

ACTIVE_CONTAINERS_GAUGE = Gauge(
    'shipyard_running_apps',
    'Number of applications whose container is running'
)

MONITOR_SYNC_COUNTER = Counter(
    'shipyard_status_syncs_total',
    'Status reconciliation passes run by the monitor'
)
