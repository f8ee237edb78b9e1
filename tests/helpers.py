"""Test doubles and builders shared across test modules."""

from __future__ import annotations

from pathlib import Path


class RecordingStore:
    """
    In-memory blob store.

    Captures uploaded bytes at put() time, since the rotator deletes local
    artifacts right after a successful upload. fail_on lists 0-based put
    call numbers that raise instead of storing.
    """

    def __init__(self, fail_on: set[int] | None = None) -> None:
        self.objects: dict[str, bytes] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_on = fail_on or set()

    def put(self, local_path: str, key: str) -> None:
        call_number = len(self.calls)
        self.calls.append((local_path, key))
        if call_number in self.fail_on:
            raise ConnectionError(f"simulated upload failure for {key}")
        self.objects[key] = Path(local_path).read_bytes()

    def get(self, key: str, local_path: str) -> None:
        Path(local_path).write_bytes(self.objects[key])

    def list(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))

    def delete(self, key: str) -> None:
        del self.objects[key]

    def uri(self, key: str) -> str:
        return f"memory://{key}"

    @property
    def keys(self) -> list[str]:
        return [key for _, key in self.calls]


def sfm_content(rows: int, sentinel: str | None = "jsonS3Exported:false") -> str:
    """An SFM document with an id,name header and the given number of rows."""
    lines = ["#id,name"]
    if sentinel is not None:
        lines.append(sentinel)
    lines.extend(f"{i},name-{i}" for i in range(rows))
    return "\n".join(lines) + "\n"


def json_lines(data: bytes) -> list[str]:
    """Split uploaded JSON Lines bytes into lines."""
    return data.decode("utf-8").splitlines()
