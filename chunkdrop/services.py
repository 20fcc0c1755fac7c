from dataclasses import dataclass

from fastapi import Request

from chunkdrop.assembler import SessionAssembler
from chunkdrop.chunks import ChunkStore
from chunkdrop.config import Settings
from chunkdrop.db import SessionLocal
from chunkdrop.handoff import StorageHandoff
from chunkdrop.ranges import RangeReader
from chunkdrop.sessions import UploadSessionRegistry
from chunkdrop.storage import BlobStore, build_blob_store


@dataclass
class Services:
    chunk_store: ChunkStore
    registry: UploadSessionRegistry
    blob_store: BlobStore
    handoff: StorageHandoff
    assembler: SessionAssembler
    reader: RangeReader


def build_services(config: Settings) -> Services:
    chunk_store = ChunkStore(config.temp_path())
    registry = UploadSessionRegistry(SessionLocal)
    blob_store = build_blob_store(config)
    handoff = StorageHandoff(
        blob_store,
        registry,
        enabled=config.handoff_enabled,
        max_attempts=config.handoff_max_attempts,
        backoff_seconds=config.handoff_retry_backoff_seconds,
    )
    assembler = SessionAssembler(
        chunk_store,
        registry,
        handoff,
        upload_dir=config.upload_dir,
        buffer_bytes=config.assembly_buffer_bytes,
    )
    reader = RangeReader(config.upload_dir, block_size=config.read_block_bytes)
    return Services(
        chunk_store=chunk_store,
        registry=registry,
        blob_store=blob_store,
        handoff=handoff,
        assembler=assembler,
        reader=reader,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
