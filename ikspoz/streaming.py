"""
Streaming protocol for relaying response bodies over the relay websocket.

Protocol Design:
1. On the first body write the sink sends a response_init message carrying
   status, reason and headers, flagged as streaming
2. Every body write is sent as one or more stream_chunk messages
3. Closing the sink sends stream_complete with a checksum of the whole body
4. Each chunk carries its own SHA256 so the relay can verify integrity
"""

import base64
import hashlib
import logging
import uuid
from typing import Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Default chunk size (512KB - small enough to avoid memory issues, large enough to be efficient)
DEFAULT_CHUNK_SIZE = 512 * 1024


class StreamMessage:
    """Factory for creating streaming protocol messages."""

    @staticmethod
    def response(request_id: str, status_code: int, reason: str,
                 headers: List[Tuple[str, str]]) -> dict:
        """Complete response with an empty body, no streaming follows."""
        return {
            "request_id": request_id,
            "status_code": status_code,
            "reason": reason,
            "headers": [[name, value] for name, value in headers],
            "body": "",
            "is_binary": False,
            "is_streaming": False,
        }

    @staticmethod
    def response_init(request_id: str, status_code: int, reason: str,
                      headers: List[Tuple[str, str]], stream_id: str,
                      total_size: int, content_type: str) -> dict:
        """Initial response indicating streaming will follow."""
        return {
            "request_id": request_id,
            "status_code": status_code,
            "reason": reason,
            "headers": [[name, value] for name, value in headers],
            "body": "",
            "is_binary": True,
            "is_streaming": True,
            "stream": {
                "id": stream_id,
                "total_size": total_size,  # 0 when unknown
                "content_type": content_type
            }
        }

    @staticmethod
    def chunk(stream_id: str, chunk_index: int, data: bytes, checksum: str) -> dict:
        """Create a chunk message."""
        return {
            "type": "stream_chunk",
            "stream_id": stream_id,
            "chunk": {
                "index": chunk_index,
                "data": base64.b64encode(data).decode('ascii'),
                "checksum": checksum,  # SHA256 of this chunk
                "size": len(data)
            }
        }

    @staticmethod
    def complete(stream_id: str, final_checksum: str, total_chunks: int) -> dict:
        """Signal stream completion."""
        return {
            "type": "stream_complete",
            "stream_id": stream_id,
            "total_chunks": total_chunks,
            "checksum": final_checksum  # SHA256 of entire body
        }


class ChunkedStreamer:
    """Turns body writes of one response into chunk messages."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE, stream_id: Optional[str] = None):
        self.chunk_size = chunk_size
        self.stream_id = stream_id or str(uuid.uuid4())
        self.chunk_index = 0
        self.bytes_sent = 0
        self._file_hasher = hashlib.sha256()

    def chunks(self, data: bytes) -> Iterator[dict]:
        """Yield chunk messages for one body write, splitting it at chunk_size."""
        for i in range(0, len(data), self.chunk_size):
            chunk = data[i:i + self.chunk_size]

            # Update body checksum
            self._file_hasher.update(chunk)
            self.bytes_sent += len(chunk)

            yield StreamMessage.chunk(
                stream_id=self.stream_id,
                chunk_index=self.chunk_index,
                data=chunk,
                checksum=hashlib.sha256(chunk).hexdigest()
            )
            self.chunk_index += 1

    def complete(self) -> dict:
        logger.debug(f"Stream {self.stream_id} complete: {self.chunk_index} chunks, {self.bytes_sent} bytes")
        return StreamMessage.complete(self.stream_id, self._file_hasher.hexdigest(), self.chunk_index)
