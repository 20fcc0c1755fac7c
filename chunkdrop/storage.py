from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from chunkdrop.config import Settings


@dataclass(frozen=True)
class RemoteObject:
    key: str
    size: int
    last_modified: datetime | None = None


class BlobStore:
    def put_file(self, key: str, path: Path) -> None:
        raise NotImplementedError

    def list_objects(self, prefix: str = "") -> list[RemoteObject]:
        raise NotImplementedError

    def delete_key(self, key: str) -> None:
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _target(self, key: str) -> Path:
        target = (self.root / key).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise ValueError(f"key escapes blob root: {key}")
        return target

    def put_file(self, key: str, path: Path) -> None:
        target = self._target(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(Path(path).read_bytes())

    def list_objects(self, prefix: str = "") -> list[RemoteObject]:
        if not self.root.exists():
            return []
        objects: list[RemoteObject] = []
        for path in sorted(self.root.rglob("*")):
            if not path.is_file():
                continue
            key = str(path.relative_to(self.root)).replace("\\", "/")
            if not key.startswith(prefix):
                continue
            stat = path.stat()
            objects.append(
                RemoteObject(
                    key=key,
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        return objects

    def delete_key(self, key: str) -> None:
        target = self._target(key)
        if target.exists():
            target.unlink()


class S3BlobStore(BlobStore):
    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for s3-compatible backends")
        import boto3

        self.bucket = bucket
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        self.client = boto3.client("s3", **client_kwargs)

    def put_file(self, key: str, path: Path) -> None:
        with open(path, "rb") as body:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=body)

    def list_objects(self, prefix: str = "") -> list[RemoteObject]:
        objects: list[RemoteObject] = []
        continuation_token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            response = self.client.list_objects_v2(**params)
            for item in response.get("Contents", []):
                key = item.get("Key")
                if key:
                    objects.append(
                        RemoteObject(key=key, size=int(item.get("Size", 0)), last_modified=item.get("LastModified"))
                    )
            if not response.get("IsTruncated"):
                break
            continuation_token = response.get("NextContinuationToken")
        return objects

    def delete_key(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)


def build_blob_store(settings: Settings) -> BlobStore:
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalBlobStore(Path(settings.storage_root) / settings.bucket)
    if backend == "s3":
        return S3BlobStore(settings.bucket, settings.aws_region)
    if backend == "r2":
        endpoint_url = settings.r2_endpoint_url
        if not endpoint_url:
            if not settings.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when storage_backend=r2")
            endpoint_url = f"https://{settings.r2_account_id}.r2.cloudflarestorage.com"

        return S3BlobStore(
            bucket=settings.bucket,
            region="auto",
            endpoint_url=endpoint_url,
            access_key_id=settings.r2_access_key_id or None,
            secret_access_key=settings.r2_secret_access_key or None,
        )
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")
