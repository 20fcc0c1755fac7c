from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

chunks_uploaded_total = Counter("chunks_uploaded_total", "Total chunks stored")
bytes_uploaded_total = Counter("bytes_uploaded_total", "Total chunk bytes stored")
chunk_upload_failures_total = Counter("chunk_upload_failures_total", "Total failed chunk writes")
assemblies_total = Counter("assemblies_total", "Total uploads assembled into artifacts")
assembly_failures_total = Counter("assembly_failures_total", "Total failed assemblies")
handoffs_total = Counter("handoffs_total", "Total artifacts stored remotely")
handoff_failures_total = Counter("handoff_failures_total", "Total artifacts that exhausted handoff attempts")
handoff_retries_total = Counter("handoff_retries_total", "Total handoff retry attempts")
range_requests_total = Counter("range_requests_total", "Total file reads by response kind", ["kind"])

chunk_write_latency_seconds = Histogram("chunk_write_latency_seconds", "Chunk file write latency in seconds")
assembly_duration_seconds = Histogram("assembly_duration_seconds", "Time spent assembling an upload in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
