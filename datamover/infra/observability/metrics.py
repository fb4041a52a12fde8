from prometheus_client import Counter, Histogram

# operation is one of a fixed set of engine verbs; object keys never become labels
OPERATIONS = Counter(
    "datamover_operations_total",
    "Transfer engine operations by outcome",
    ["operation", "outcome"],
)

BYTES = Counter(
    "datamover_bytes_total",
    "Bytes moved to or from the object store",
    ["direction"],
)

LATENCY = Histogram(
    "datamover_operation_duration_seconds",
    "Transfer engine operation latency in seconds",
    ["operation"],
)
