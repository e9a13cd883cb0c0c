from __future__ import annotations

from abc import ABC, abstractmethod

from ..models.generation import GenerationHandle, GenerationRequest, PollResult


class GenerationBackend(ABC):
    """
    Boundary to an external image/video generation service.

    ``invoke`` either returns the finished asset URL or the request id of an
    asynchronous job. Jobs are completed either by polling ``poll_status`` or,
    when ``delivers_by_webhook`` is set, by the provider calling back.
    """

    delivers_by_webhook: bool = False

    @abstractmethod
    async def invoke(self, request: GenerationRequest) -> GenerationHandle:
        ...

    async def poll_status(self, request_id: str) -> PollResult:
        raise NotImplementedError(f"{type(self).__name__} does not support polling")

    async def aclose(self) -> None:
        return None
