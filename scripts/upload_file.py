import argparse
import json
import statistics
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

import httpx


def _chunk_offsets(size: int, chunk_size: int) -> list[tuple[int, int]]:
    return [(offset, min(chunk_size, size - offset)) for offset in range(0, size, chunk_size)]


def upload_file(
    client: httpx.Client,
    path: Path,
    file_name: str,
    chunk_size: int,
    workers: int,
    api_key: str,
) -> dict:
    size = path.stat().st_size
    auth = {"X-API-Key": api_key}
    started = time.perf_counter()
    init_resp = client.post("/upload/init", json={"fileSize": size} if size else None, headers=auth)
    init_resp.raise_for_status()
    upload_id = init_resp.json()["uploadId"]

    latencies_ms: list[float] = []

    def _upload_chunk(offset: int, length: int) -> None:
        with path.open("rb") as handle:
            handle.seek(offset)
            data = handle.read(length)
        t0 = time.perf_counter()
        resp = client.post(
            "/upload/chunk",
            content=data,
            headers={
                **auth,
                "x-upload-id": upload_id,
                "Content-Range": f"bytes {offset}-{offset + len(data) - 1}/{size}",
                "Content-Type": "application/octet-stream",
            },
            timeout=60.0,
        )
        resp.raise_for_status()
        latencies_ms.append((time.perf_counter() - t0) * 1000)

    offsets = _chunk_offsets(size, chunk_size)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_upload_chunk, offset, length) for offset, length in offsets]
        for fut in as_completed(futures):
            fut.result()

    complete = client.post("/upload/complete", json={"uploadId": upload_id, "fileName": file_name}, headers=auth)
    complete.raise_for_status()

    return {
        "upload_id": upload_id,
        "url": complete.json()["url"],
        "file_bytes": size,
        "chunk_count": len(offsets),
        "total_ms": round((time.perf_counter() - started) * 1000, 3),
        "chunk_latency_ms_avg": round(statistics.mean(latencies_ms), 3) if latencies_ms else 0.0,
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Upload a local file to chunkdrop in parallel chunks.")
    parser.add_argument("path", help="File to upload")
    parser.add_argument("--base-url", default="http://127.0.0.1:3000", help="API base URL")
    parser.add_argument("--name", default="", help="Name to store the file under (defaults to the local name)")
    parser.add_argument("--chunk-size-bytes", type=int, default=1024 * 1024, help="Chunk size in bytes")
    parser.add_argument("--workers", type=int, default=4, help="Parallel chunk uploads")
    parser.add_argument("--api-key", default="dev-key", help="Value for the X-API-Key header")
    parser.add_argument("--status", action="store_true", help="Poll the handoff status after completing")
    args = parser.parse_args()

    path = Path(args.path)
    if not path.is_file():
        print(f"[FAIL] {path} is not a file")
        return 1

    with httpx.Client(base_url=args.base_url.rstrip("/"), timeout=30.0) as client:
        summary = upload_file(client, path, args.name or path.name, args.chunk_size_bytes, args.workers, args.api_key)
        print(json.dumps(summary, indent=2))

        if args.status:
            for _ in range(30):
                status = client.get(f"/upload/{summary['upload_id']}/status", headers={"X-API-Key": args.api_key})
                status.raise_for_status()
                body = status.json()
                if body.get("handoffStatus") != "PENDING":
                    print(f"[INFO] handoff status={body.get('handoffStatus')} attempts={body.get('handoffAttempts')}")
                    break
                time.sleep(1.0)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
