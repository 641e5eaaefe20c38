"""Local storage for generated documents."""
import asyncio
import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)


class DocumentNotFound(LookupError):
    pass


class DocumentStore:
    """Stores contract and receipt PDFs under a base directory."""

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    @staticmethod
    def contract_name(contract_id: int) -> str:
        return f"contract-{contract_id}.pdf"

    @staticmethod
    def receipt_name(invoice_id: int) -> str:
        return f"receipt-{invoice_id}.pdf"

    def _path(self, name: str) -> str:
        return os.path.join(self.base_dir, name)

    def _write(self, name: str, content: bytes) -> str:
        os.makedirs(self.base_dir, exist_ok=True)
        path = self._path(name)
        # Write then rename so readers never see a half-written PDF
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "wb") as f:
            f.write(content)
        os.replace(tmp_path, path)
        return path

    def _read(self, name: str) -> Optional[bytes]:
        try:
            with open(self._path(name), "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None

    async def save(self, name: str, content: bytes) -> str:
        path = await asyncio.to_thread(self._write, name, content)
        logger.info(f"Stored document {name} ({len(content)} bytes)")
        return path

    async def load(self, name: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._read, name)

    async def get(self, name: str) -> bytes:
        content = await self.load(name)
        if content is None:
            raise DocumentNotFound(f"Document {name} not found")
        return content

    async def exists(self, name: str) -> bool:
        return await asyncio.to_thread(os.path.exists, self._path(name))
