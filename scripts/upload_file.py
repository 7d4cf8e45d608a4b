"""
Command-line upload client.

Splits a file into chunks and sends them to ``POST /api/v1/upload/chunk``
with bounded concurrency, the same way the browser client does.
"""
import argparse
import asyncio
import math
import os
import secrets
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp
from tqdm import tqdm

DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024
STATUS_POLL_INTERVAL = 1.0
STATUS_POLL_TIMEOUT = 600.0


def parse_size(size_str: str) -> int:
    """Parse size string (e.g., '8MB', '512KB') to bytes."""
    units = {'KB': 1024, 'MB': 1024**2, 'GB': 1024**3, 'B': 1}
    size_str = size_str.strip().upper()
    for unit, multiplier in units.items():
        if size_str.endswith(unit):
            return int(float(size_str[:-len(unit)]) * multiplier)
    return int(size_str)


def read_chunk(path: Path, index: int, chunk_size: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(index * chunk_size)
        return f.read(chunk_size)


class ChunkUploader:
    """Uploads one file as a numbered sequence of chunks."""

    def __init__(self, base_url: str, chunk_size: Optional[int] = None, concurrency: Optional[int] = None,
                 retries: int = 3):
        self.base_url = base_url.rstrip("/")
        self.chunk_size = chunk_size
        self.concurrency = concurrency
        self.retries = retries
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=60)
        self.session = aiohttp.ClientSession(timeout=timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()

    async def fetch_limits(self) -> Dict[str, Any]:
        async with self.session.get(f"{self.base_url}/api/v1/upload/config") as resp:
            resp.raise_for_status()
            return await resp.json()

    async def _send_chunk(self, path: Path, upload_id: str, index: int, total_chunks: int,
                          total_size: int, chunk_size: int) -> Dict[str, Any]:
        payload = await asyncio.get_running_loop().run_in_executor(None, read_chunk, path, index, chunk_size)
        last_error: Optional[str] = None

        for attempt in range(1, self.retries + 1):
            form = aiohttp.FormData()
            form.add_field("upload_id", upload_id)
            form.add_field("chunk_index", str(index))
            form.add_field("total_chunks", str(total_chunks))
            form.add_field("filename", path.name)
            form.add_field("total_size", str(total_size))
            form.add_field("chunk", payload, filename="blob", content_type="application/octet-stream")
            try:
                async with self.session.post(f"{self.base_url}/api/v1/upload/chunk", data=form) as resp:
                    body = await resp.json()
                    if resp.status == 200:
                        return body
                    last_error = f"HTTP {resp.status}: {body.get('error', {}).get('message')}"
                    # Client errors will not succeed on retry
                    if 400 <= resp.status < 500:
                        break
            except aiohttp.ClientError as e:
                last_error = str(e)
            await asyncio.sleep(attempt)

        raise RuntimeError(f"Chunk {index} failed: {last_error}")

    async def upload(self, path: Path) -> Dict[str, Any]:
        limits = await self.fetch_limits()
        total_size = path.stat().st_size
        if total_size > limits["max_upload_size"]:
            raise ValueError(f"{path.name} is larger than the server limit of {limits['max_upload_size']} bytes")

        chunk_size = min(self.chunk_size or DEFAULT_CHUNK_SIZE, limits["max_chunk_size"])
        # Grow chunks when the file would need more than the server allows
        chunk_size = max(chunk_size, math.ceil(total_size / limits["max_total_chunks"]))
        if chunk_size > limits["max_chunk_size"]:
            raise ValueError(f"{path.name} needs more than {limits['max_total_chunks']} chunks at the server chunk limit")
        concurrency = self.concurrency or limits["max_concurrent_chunks"]
        total_chunks = max(1, math.ceil(total_size / chunk_size))
        upload_id = f"upload_{secrets.token_hex(6)}"

        semaphore = asyncio.Semaphore(concurrency)
        result: Dict[str, Any] = {}

        with tqdm(total=total_size, unit="B", unit_scale=True, desc=path.name) as pbar:
            async def worker(index: int) -> None:
                async with semaphore:
                    response = await self._send_chunk(path, upload_id, index, total_chunks, total_size, chunk_size)
                    pbar.update(min(chunk_size, total_size - index * chunk_size))
                    if response.get("status") == "completed":
                        result.update(response)

            await asyncio.gather(*(worker(i) for i in range(total_chunks)))

        if not result:
            # The completing request may still be assembling when the others return
            result = await self.wait_for_completion(upload_id)
        return result

    async def wait_for_completion(self, upload_id: str, timeout: float = STATUS_POLL_TIMEOUT) -> Dict[str, Any]:
        """Poll the session status until it is completed or failed."""
        deadline = time.monotonic() + timeout
        while True:
            async with self.session.get(f"{self.base_url}/api/v1/upload/status/{upload_id}") as resp:
                body = await resp.json()
                if resp.status != 200:
                    raise RuntimeError(f"Status of {upload_id} unavailable: HTTP {resp.status}")
            if body.get("status") == "completed":
                return body
            if body.get("status") == "failed":
                raise RuntimeError(f"Upload {upload_id} failed: {body.get('error_message')}")
            if time.monotonic() >= deadline:
                raise RuntimeError(f"Upload {upload_id} still {body.get('status')} after {timeout:.0f}s")
            await asyncio.sleep(STATUS_POLL_INTERVAL)


async def upload_files(args: argparse.Namespace) -> int:
    failures = 0
    async with ChunkUploader(
        args.url,
        chunk_size=parse_size(args.chunk_size) if args.chunk_size else None,
        concurrency=args.concurrency,
    ) as uploader:
        for file_name in args.files:
            path = Path(file_name)
            if not path.is_file():
                print(f"Skipping {file_name}: not a file", file=sys.stderr)
                failures += 1
                continue
            start = time.time()
            try:
                result = await uploader.upload(path)
            except (RuntimeError, ValueError, aiohttp.ClientError) as e:
                print(f"✗ {path.name}: {e}", file=sys.stderr)
                failures += 1
                continue
            print(f"✓ {path.name} -> {result.get('stored_filename')} in {time.time() - start:.1f}s")
    return failures


def main():
    """Main function"""
    parser = argparse.ArgumentParser(description="Upload files to the chunked video upload service")
    parser.add_argument("files", nargs="+", help="Files to upload")
    parser.add_argument("--url", default=os.getenv("UPLOADER_URL", "http://localhost:8080"), help="Service base URL")
    parser.add_argument("--chunk-size", default=None, help="Chunk size, e.g. 8MB (capped by the server limit)")
    parser.add_argument("--concurrency", type=int, default=None, help="Parallel chunk requests")

    args = parser.parse_args()
    sys.exit(1 if asyncio.run(upload_files(args)) else 0)


if __name__ == "__main__":
    main()
