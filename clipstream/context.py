import secrets
import time
from dataclasses import dataclass, field


def new_request_id() -> str:
    return secrets.token_hex(4)


@dataclass
class RequestContext:
    """
    Per-request correlation data threaded through the streaming and upload calls.
    Log lines are prefixed with the request id so interleaved threads stay readable.
    """
    request_id: str = field(default_factory=new_request_id)
    started_at: float = field(default_factory=time.monotonic)

    def log(self, message: str) -> None:
        print(f"[{self.request_id}] {message}")

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)
