"""
Model asset resolution.

``ModelPathResolver`` materializes the packaged model into durable app storage on
first use and hands back a local file path. The preferred format is copied as-is;
when only the fallback format is bundled it is copied and a best-effort conversion
to the preferred format is attempted, keeping the fallback file if that fails.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .config import ASSET_COPY_ATTEMPTS, ASSET_LOAD_TIMEOUT_SECONDS, BACKOFF_UNIT_SECONDS
from .exceptions import AssetCopyFailure, AssetLoadTimeout, AssetNotFound, EdgeChatError

if TYPE_CHECKING:
    from .protocols import AssetStore

logger = logging.getLogger("edgechat")

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class ModelAsset:
    logical_name: str
    preferred_format: str = "gguf"
    fallback_format: str = "bin"
    resolved_path: Path | None = None

    def __post_init__(self) -> None:
        if not self.logical_name.strip():
            raise ValueError("logical_name must not be empty")
        self.preferred_format = self.preferred_format.lstrip(".")
        self.fallback_format = self.fallback_format.lstrip(".")

    def filename(self, fmt: str) -> str:
        """Deterministic on-disk filename for this model in format *fmt*."""
        stem = _UNSAFE_FILENAME_CHARS.sub("_", self.logical_name.strip())
        return f"{stem}.{fmt}"

    def asset_name(self, fmt: str) -> str:
        """Name of the packaged asset in format *fmt*."""
        return f"{self.logical_name}.{fmt}"


# ---------------------------------------------------------------------------
# Asset store
# ---------------------------------------------------------------------------


class DirectoryAssetStore:
    """Asset store over a directory of bundled files, read off the event loop."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    async def exists(self, name: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, (self.root / name).is_file)

    async def load_asset(self, name: str) -> bytes:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, (self.root / name).read_bytes)
        except FileNotFoundError:
            raise AssetNotFound(f"Asset not found: {self.root / name}") from None

    def __repr__(self) -> str:
        return f"DirectoryAssetStore(root={self.root!r})"


# ---------------------------------------------------------------------------
# Conversion and reporting
# ---------------------------------------------------------------------------


class ModelConverter:
    """Best-effort conversion of a fallback-format model to the preferred format.

    Fallback bundles are frequently the preferred payload under a legacy
    extension. When the file carries the preferred format's magic header it is
    materialized under the preferred extension; anything else is not converted
    and ``convert`` returns None.
    """

    def __init__(self, magic: bytes | None = b"GGUF") -> None:
        self.magic = magic

    async def convert(self, source: Path, target_format: str) -> Path | None:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._convert_sync, source, target_format)

    def _convert_sync(self, source: Path, target_format: str) -> Path | None:
        if not source.is_file():
            logger.info(f"[EdgeChat Assets] Conversion skipped, file not found: {source}")
            return None
        if self.magic is not None:
            with open(source, "rb") as fh:
                header = fh.read(len(self.magic))
            if header != self.magic:
                logger.info(
                    f"[EdgeChat Assets] {source.name} is not a .{target_format} payload; "
                    "keeping the original format."
                )
                return None

        target = source.with_suffix(f".{target_format}")
        if target.is_file() and target.stat().st_size > 0:
            return target
        shutil.copyfile(source, target)
        logger.info(f"[EdgeChat Assets] Converted {source.name} -> {target.name}")
        return target


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    return f"{size / (1024 * 1024 * 1024):.1f} GB"


def describe_model_file(path: str | Path) -> str:
    """Human-readable report of a model file's location, size and age."""
    path = Path(path)
    if not path.is_file():
        return f"Model not found: {path}"
    stat = path.stat()
    modified = datetime.fromtimestamp(stat.st_mtime, tz=UTC).strftime("%Y-%m-%d %H:%M:%S %Z")
    return (
        f"Model Path: {path}\n"
        f"File Size: {format_bytes(stat.st_size)}\n"
        f"Last Modified: {modified}\n"
        "Status: Accessible"
    )


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ModelPathResolver:
    def __init__(
        self,
        asset: ModelAsset,
        store: AssetStore,
        app_dir: str | Path,
        *,
        converter: ModelConverter | None = None,
        load_timeout: float = ASSET_LOAD_TIMEOUT_SECONDS,
        copy_attempts: int = ASSET_COPY_ATTEMPTS,
        backoff_unit: float = BACKOFF_UNIT_SECONDS,
    ) -> None:
        if copy_attempts <= 0:
            raise ValueError("copy_attempts must be > 0")
        self._asset = asset
        self._store = store
        self._app_dir = Path(app_dir)
        self._converter = converter if converter is not None else ModelConverter()
        self._load_timeout = load_timeout
        self._copy_attempts = copy_attempts
        self._backoff_unit = backoff_unit
        self._lock = asyncio.Lock()
        self._copy_count = 0

    @property
    def asset(self) -> ModelAsset:
        return self._asset

    @property
    def resolved_path(self) -> Path | None:
        return self._asset.resolved_path

    @property
    def copy_count(self) -> int:
        """Number of asset copies written to app storage by this resolver."""
        return self._copy_count

    async def resolve(self) -> Path:
        """Return a local path to a usable model file, copying it on first use.

        Raises:
            AssetNotFound: neither the preferred nor the fallback format is bundled.
            AssetLoadTimeout: reading the asset exceeded the load timeout on every attempt.
            AssetCopyFailure: the copy could not be written and verified.
        """
        async with self._lock:
            cached = self._asset.resolved_path
            if cached is not None and await self._is_usable(cached):
                return cached

            preferred = self._asset.preferred_format
            fallback = self._asset.fallback_format

            if await self._store.exists(self._asset.asset_name(preferred)):
                logger.info(f"[EdgeChat Assets] Found .{preferred} model in assets.")
                path = await self._copy_to_app_dir(
                    self._asset.asset_name(preferred), self._asset.filename(preferred)
                )
            elif await self._store.exists(self._asset.asset_name(fallback)):
                logger.info(
                    f"[EdgeChat Assets] Found .{fallback} model in assets, attempting conversion..."
                )
                copied = await self._copy_to_app_dir(
                    self._asset.asset_name(fallback), self._asset.filename(fallback)
                )
                path = await self._try_convert(copied, preferred)
            else:
                raise AssetNotFound(
                    f"Neither .{preferred} nor .{fallback} model found in assets "
                    f"for '{self._asset.logical_name}'"
                )

            self._asset.resolved_path = path
            return path

    def reset(self, delete_files: bool = False) -> None:
        """Forget the cached path, e.g. after a model format or version change."""
        if delete_files:
            for fmt in (self._asset.preferred_format, self._asset.fallback_format):
                target = self._app_dir / self._asset.filename(fmt)
                target.unlink(missing_ok=True)
        self._asset.resolved_path = None

    async def _try_convert(self, copied: Path, preferred: str) -> Path:
        try:
            converted = await self._converter.convert(copied, preferred)
        except Exception:
            logger.warning("[EdgeChat Assets] Model conversion failed.", exc_info=True)
            converted = None
        if converted is not None and await self._is_usable(converted):
            return converted
        logger.info(f"[EdgeChat Assets] Conversion unavailable, using {copied.name} directly.")
        return copied

    async def _copy_to_app_dir(self, asset_name: str, filename: str) -> Path:
        target = self._app_dir / filename
        loop = asyncio.get_running_loop()

        for attempt in range(1, self._copy_attempts + 1):
            try:
                if await self._is_usable(target):
                    logger.info(f"[EdgeChat Assets] Model already present at {target}")
                    return target

                logger.info(
                    f"[EdgeChat Assets] Copying model to app directory "
                    f"(attempt {attempt}/{self._copy_attempts})..."
                )
                data = await self._load_with_timeout(asset_name)
                await loop.run_in_executor(None, self._write_file, target, data)

                if not await self._is_usable(target):
                    raise AssetCopyFailure(f"Copied model file is empty: {target}")
                self._copy_count += 1
                logger.info(f"[EdgeChat Assets] Model copied to {target}")
                return target

            except AssetNotFound:
                raise
            except Exception as e:
                logger.warning(
                    f"[EdgeChat Assets] Copy attempt {attempt}/{self._copy_attempts} failed: {e}"
                )
                await loop.run_in_executor(None, self._remove_partial, target)
                if attempt >= self._copy_attempts:
                    if isinstance(e, EdgeChatError):
                        raise
                    raise AssetCopyFailure(
                        f"Failed to copy model after {self._copy_attempts} attempts: {e}"
                    ) from e
                await asyncio.sleep(self._backoff_unit * attempt)

        raise AssetCopyFailure("Failed to copy model after all attempts")

    async def _load_with_timeout(self, asset_name: str) -> bytes:
        try:
            return await asyncio.wait_for(
                self._store.load_asset(asset_name), timeout=self._load_timeout
            )
        except TimeoutError as exc:
            raise AssetLoadTimeout(
                f"Asset loading timeout after {self._load_timeout:g}s: {asset_name}"
            ) from exc

    async def _is_usable(self, path: Path) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _is_non_empty_file, path)

    @staticmethod
    def _write_file(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    @staticmethod
    def _remove_partial(target: Path) -> None:
        try:
            target.unlink(missing_ok=True)
        except OSError:
            logger.warning(
                "[EdgeChat Assets] Could not remove partially written %s.", target, exc_info=True
            )

    def __repr__(self) -> str:
        return (
            f"ModelPathResolver(asset={self._asset.logical_name!r}, "
            f"app_dir={self._app_dir!r}, resolved={self._asset.resolved_path!r})"
        )


def _is_non_empty_file(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False
