"""
Persistence store for generated artifacts and their usage records.

Uses SQLModel over SQLAlchemy's async engine (aiosqlite by default). The image
file, the user uploads and both rows are written as one unit: if the database
transaction fails, the files are removed again.
"""

import os
import base64
import uuid
import asyncio
import random
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Callable, TypeVar, Awaitable

from sqlalchemy import Column, DateTime, Text, JSON, text, event
from sqlalchemy.engine import make_url
from sqlalchemy.sql import func
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError
from sqlmodel import SQLModel, Field

from .constants import MODE_STANDARD
from ..models import GeneratedImage, GenerationRequest, UsageRecord

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./data/adforge.db"
DEFAULT_OUTPUT_DIR = "./data/generations"

_MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


async def retry_db_operation(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 5,
    base_delay: float = 0.1,
    max_delay: float = 2.0,
    operation_name: str = "database operation"
) -> T:
    """
    Retry database operations with exponential backoff to handle SQLite lock contention.

    Only "database is locked" errors are retried; anything else propagates
    immediately.
    """
    for attempt in range(max_retries + 1):
        try:
            return await operation()
        except OperationalError as e:
            if "database is locked" not in str(e).lower():
                raise

            if attempt == max_retries:
                logger.error(f"Failed to execute {operation_name} after {max_retries} retries. Last error: {e}")
                raise

            # Exponential backoff with up to 10% jitter
            delay = min(base_delay * (2 ** attempt), max_delay)
            total_delay = delay + random.uniform(0, delay * 0.1)

            logger.warning(f"Database locked during {operation_name}, retrying in {total_delay:.2f}s (attempt {attempt + 1}/{max_retries})")
            await asyncio.sleep(total_delay)

    raise RuntimeError(f"Unexpected error in retry_db_operation for {operation_name}")


class Generation(SQLModel, table=True):
    """One persisted generated image."""
    __tablename__ = "generations"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    request_id: str = Field(index=True)
    user_id: Optional[str] = Field(default=None, index=True)

    model_id: str
    resolution: str
    mime_type: str = Field(default="image/png")
    image_path: str = Field(description="Path of the stored image file")
    prompt_used: str = Field(sa_column=Column(Text))

    # Request context, so a saved generation can be traced back to what was asked
    user_prompt: Optional[str] = Field(default=None, sa_column=Column(Text))
    generation_mode: str = Field(default=MODE_STANDARD)
    template_id: Optional[str] = Field(default=None, index=True)
    product_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON), description="Product ids, falling back to the recipe's products")
    original_image_paths: List[str] = Field(default_factory=list, sa_column=Column(JSON), description="Paths of the stored user uploads")

    created_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime(timezone=True), server_default=func.now()))


class GenerationUsage(SQLModel, table=True):
    """Usage / cost row for one generation."""
    __tablename__ = "generation_usage"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    generation_id: str = Field(foreign_key="generations.id", index=True)
    request_id: str = Field(index=True)
    user_id: Optional[str] = Field(default=None, index=True)

    model_id: str
    operation: str = Field(default="generate")
    resolution: str
    input_images_count: int = Field(default=0)
    prompt_chars: int = Field(default=0)
    duration_ms: int = Field(default=0)

    input_tokens: Optional[int] = Field(default=None)
    output_tokens: Optional[int] = Field(default=None)
    estimated_cost_micros: int = Field(default=0)
    estimation_source: str = Field(description="'usage' or 'pricing_formula'")

    created_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime(timezone=True), server_default=func.now()))


def create_engine_for(database_url: str) -> AsyncEngine:
    """Create an async engine; SQLite connections get WAL and foreign keys enabled."""
    is_sqlite = database_url.startswith("sqlite")
    engine = create_async_engine(
        database_url,
        echo=False,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        pool_pre_ping=True,
    )

    if is_sqlite:
        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return engine


class SQLModelGenerationStore:
    """PersistenceStore backed by SQLModel tables and an image directory."""

    def __init__(self, database_url: Optional[str] = None, output_dir: Optional[str] = None):
        self.database_url = database_url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
        self.output_dir = Path(output_dir or os.getenv("GENERATION_OUTPUT_DIR", DEFAULT_OUTPUT_DIR))
        self.engine = create_engine_for(self.database_url)
        self.session_factory = sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self._tables_ready = False
        self._init_lock = asyncio.Lock()

    def _ensure_directories(self) -> None:
        """Create the output directory and, for file-based SQLite, the database's parent directory."""
        url = make_url(self.database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    async def create_tables(self) -> None:
        """Create the generations and generation_usage tables if missing."""
        async with self._init_lock:
            if self._tables_ready:
                return
            await asyncio.to_thread(self._ensure_directories)
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            self._tables_ready = True
            logger.info(f"Generation tables ready at {self.database_url}")

    async def health_check(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    def _write_files(self, image: GeneratedImage, request: Optional[GenerationRequest],
                     request_id: str, record_id: str, written: List[Path]) -> None:
        """Write the generated image, then every user upload, into the request's directory."""
        target_dir = self.output_dir / request_id
        target_dir.mkdir(parents=True, exist_ok=True)

        extension = _MIME_EXTENSIONS.get(image.mime_type, "png")
        path = target_dir / f"{record_id}.{extension}"
        path.write_bytes(base64.b64decode(image.image_base64))
        written.append(path)

        for index, upload in enumerate(request.images if request else []):
            extension = _MIME_EXTENSIONS.get(upload.content_type) or Path(upload.filename).suffix.lstrip(".") or "png"
            path = target_dir / f"{record_id}_original_{index}.{extension}"
            path.write_bytes(upload.data)
            written.append(path)

    def _remove_files(self, paths: List[Path]) -> None:
        for path in paths:
            path.unlink(missing_ok=True)

    async def save(self, image: GeneratedImage, usage: UsageRecord,
                   request: Optional[GenerationRequest] = None,
                   product_ids: Optional[List[str]] = None) -> str:
        """
        Write the image and upload files plus both rows; returns the generation record id.

        `product_ids` overrides `request.product_ids` when the caller has already
        resolved them (for example from a recipe).
        """
        await self.create_tables()

        record_id = str(uuid.uuid4())
        written: List[Path] = []

        async def _insert() -> None:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(Generation(
                        id=record_id,
                        request_id=usage.request_id,
                        user_id=usage.user_id,
                        model_id=image.model_id,
                        resolution=usage.resolution,
                        mime_type=image.mime_type,
                        image_path=str(written[0]),
                        prompt_used=image.prompt_used,
                        user_prompt=request.instruction if request else None,
                        generation_mode=request.mode if request else MODE_STANDARD,
                        template_id=request.template_id if request else None,
                        product_ids=list(product_ids if product_ids is not None else (request.product_ids if request else [])),
                        original_image_paths=[str(path) for path in written[1:]],
                    ))
                    # Flush so the foreign key target exists before the usage row
                    await session.flush()
                    session.add(GenerationUsage(
                        generation_id=record_id,
                        **usage.model_dump(),
                    ))

        try:
            await asyncio.to_thread(self._write_files, image, request, usage.request_id, record_id, written)
            await retry_db_operation(_insert, operation_name=f"save generation {record_id}")
        except BaseException:
            await asyncio.to_thread(self._remove_files, list(written))
            raise

        logger.info(f"Saved generation {record_id} for request {usage.request_id} ({usage.estimated_cost_micros} micros)")
        return record_id

    async def dispose(self) -> None:
        await self.engine.dispose()
