from pathlib import Path, PurePosixPath

from audiobook_upload.config import settings


def safe_object_name(filename: str, fallback: str = "file") -> str:
    name = PurePosixPath(filename.replace("\\", "/")).name
    return name or fallback


class ObjectStorage:
    """Durable home for assembled audio files and cover images."""

    def put_object(self, key: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    def read_object(self, key: str) -> bytes:
        raise NotImplementedError

    def delete_key(self, key: str) -> None:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def put_object(self, key: str, data: bytes, content_type: str) -> str:
        full_path = self.root / key
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_bytes(data)
        return key

    def read_object(self, key: str) -> bytes:
        return (self.root / key).read_bytes()

    def delete_key(self, key: str) -> None:
        target = self.root / key
        if target.exists():
            target.unlink()


class S3ObjectStorage(ObjectStorage):
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

    def put_object(self, key: str, data: bytes, content_type: str) -> str:
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        return key

    def read_object(self, key: str) -> bytes:
        obj = self.client.get_object(Bucket=self.bucket, Key=key)
        return obj["Body"].read()

    def delete_key(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)


def build_object_storage() -> ObjectStorage:
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalObjectStorage(settings.storage_root)
    if backend == "s3":
        return S3ObjectStorage(settings.s3_bucket, settings.aws_region)
    if backend == "r2":
        if not settings.r2_bucket:
            raise ValueError("r2_bucket must be set when storage_backend=r2")
        endpoint_url = settings.r2_endpoint_url
        if not endpoint_url:
            if not settings.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when storage_backend=r2")
            endpoint_url = f"https://{settings.r2_account_id}.r2.cloudflarestorage.com"

        return S3ObjectStorage(
            bucket=settings.r2_bucket,
            region="auto",
            endpoint_url=endpoint_url,
            access_key_id=settings.r2_access_key_id or None,
            secret_access_key=settings.r2_secret_access_key or None,
        )
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")
