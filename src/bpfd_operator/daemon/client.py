"""gRPC client for the node-local bpfd daemon."""

from __future__ import annotations

import logging
from typing import Any, Callable

import grpc
from pydantic import BaseModel

from bpfd_operator.daemon.models import (
    ListRequest,
    ListResponse,
    LoadRequest,
    LoadResponse,
    UnloadRequest,
    UnloadResponse,
)

logger = logging.getLogger(__name__)

SERVICE = "bpfd.v1.Loader"


class DaemonError(Exception):
    """A daemon RPC failed."""

    def __init__(self, message: str, code: grpc.StatusCode | None = None) -> None:
        super().__init__(message)
        self.code = code

    @property
    def not_found(self) -> bool:
        return self.code == grpc.StatusCode.NOT_FOUND


def _serialize(msg: BaseModel) -> bytes:
    return msg.model_dump_json(exclude_none=True).encode("utf-8")


def _deserializer(model: type[BaseModel]) -> Callable[[bytes], Any]:
    def parse(data: bytes) -> Any:
        return model.model_validate_json(data or b"{}")

    return parse


class DaemonClient:
    """Load, unload and list programs through the bpfd daemon's gRPC endpoint."""

    def __init__(
        self,
        address: str,
        timeout_seconds: float = 30.0,
        channel: grpc.Channel | None = None,
    ) -> None:
        self.address = address
        self.timeout_seconds = timeout_seconds
        self._channel = channel or grpc.insecure_channel(address)
        self._load = self._channel.unary_unary(
            f"/{SERVICE}/Load",
            request_serializer=_serialize,
            response_deserializer=_deserializer(LoadResponse),
        )
        self._unload = self._channel.unary_unary(
            f"/{SERVICE}/Unload",
            request_serializer=_serialize,
            response_deserializer=_deserializer(UnloadResponse),
        )
        self._list = self._channel.unary_unary(
            f"/{SERVICE}/List",
            request_serializer=_serialize,
            response_deserializer=_deserializer(ListResponse),
        )

    def load(self, request: LoadRequest) -> str:
        """Load and attach a program. Returns the daemon's identifier for it."""
        resp = self._call("Load", self._load, request)
        logger.debug("Loaded program %s (section=%s)", resp.id, request.common.section_name)
        return resp.id

    def unload(self, program_id: str) -> None:
        """Detach and unload the program with the given identifier."""
        self._call("Unload", self._unload, UnloadRequest(id=program_id))
        logger.debug("Unloaded program %s", program_id)

    def list_active(self) -> set[str]:
        """Return identifiers of every program the daemon currently holds."""
        resp = self._call("List", self._list, ListRequest())
        return set(resp.ids)

    def close(self) -> None:
        self._channel.close()

    def _call(self, name: str, method: Callable[..., Any], request: BaseModel) -> Any:
        try:
            return method(request, timeout=self.timeout_seconds)
        except grpc.RpcError as e:
            code = e.code() if hasattr(e, "code") else None
            details = e.details() if hasattr(e, "details") else str(e)
            raise DaemonError(f"bpfd {name} failed: {details}", code) from e
