from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

LABELS = ("user", "repo", "type")


class Metrics:
    """Blob counters for one server instance, kept in their own registry."""

    def __init__(self):
        self.registry = CollectorRegistry()
        self.blob_write = Counter(
            "rest_server_blob_write_total",
            "Total number of blobs written",
            labelnames=LABELS,
            registry=self.registry,
        )
        self.blob_write_bytes = Counter(
            "rest_server_blob_write_bytes_total",
            "Total number of bytes written to blobs",
            labelnames=LABELS,
            registry=self.registry,
        )
        self.blob_read = Counter(
            "rest_server_blob_read_total",
            "Total number of blobs read",
            labelnames=LABELS,
            registry=self.registry,
        )
        self.blob_read_bytes = Counter(
            "rest_server_blob_read_bytes_total",
            "Total number of bytes read from blobs",
            labelnames=LABELS,
            registry=self.registry,
        )
        self.blob_delete = Counter(
            "rest_server_blob_delete_total",
            "Total number of blobs deleted",
            labelnames=LABELS,
            registry=self.registry,
        )
        self.blob_delete_bytes = Counter(
            "rest_server_blob_delete_bytes_total",
            "Total number of bytes of blobs deleted",
            labelnames=LABELS,
            registry=self.registry,
        )

    def record_write(self, user: str, repo: str, obj_type: str, size: int):
        self.blob_write.labels(user=user, repo=repo, type=obj_type).inc()
        self.blob_write_bytes.labels(user=user, repo=repo, type=obj_type).inc(size)

    def record_read(self, user: str, repo: str, obj_type: str, size: int):
        self.blob_read.labels(user=user, repo=repo, type=obj_type).inc()
        self.blob_read_bytes.labels(user=user, repo=repo, type=obj_type).inc(size)

    def record_delete(self, user: str, repo: str, obj_type: str, size: int):
        self.blob_delete.labels(user=user, repo=repo, type=obj_type).inc()
        self.blob_delete_bytes.labels(user=user, repo=repo, type=obj_type).inc(size)

    def render(self):
        """Return (body, content type) for the exposition endpoint."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
