import json
import os

import httpx


def main() -> int:
    base_url = os.getenv("VERIFY_BASE_URL", "http://127.0.0.1:3000").rstrip("/")
    print(f"Checking runtime at {base_url}")
    with httpx.Client(base_url=base_url, timeout=10.0) as client:
        try:
            health = client.get("/health")
        except Exception as exc:
            print(f"[FAIL] Could not connect to service: {exc}")
            return 1

        print(f"[INFO] /health status={health.status_code}")
        if health.status_code != 200:
            print("[FAIL] /health is not healthy.")
            return 1

        version = client.get("/version")
        app_version_header = version.headers.get("X-Chunkdrop-Version")
        print(f"[INFO] /version status={version.status_code} X-Chunkdrop-Version={app_version_header}")
        if version.status_code != 200:
            print("[FAIL] /version missing. You may be running an older server process.")
            return 2
        print(f"[OK] version payload: {json.dumps(version.json(), sort_keys=True)}")

        init = client.post("/upload/init")
        print(f"[INFO] /upload/init status={init.status_code}")
        if init.status_code != 200 or "uploadId" not in init.json():
            print("[FAIL] /upload/init did not return an uploadId.")
            return 3

        missing = client.get("/files/__verify_missing__")
        if missing.status_code != 404:
            print(f"[FAIL] /files/<name> unexpected status for a missing file: {missing.status_code}")
            return 3

        print("[OK] upload and file routes are available.")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
