"""Connection handle: credentials bound to a snapshot of member addresses."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path, PurePosixPath

from loguru import logger

from shellfleet.exceptions import ExecutionError, ValidationError
from shellfleet.types import CommandResult, Credentials, ShellTransport


class ConnectionHandle:
    """Issues remote operations against a fixed list of addresses.

    The address list is captured when the handle is created and is not
    refreshed if the group changes afterwards. Targets are zero-based
    indices into that list; ``None`` means every address. Targets are
    processed one after the other, in index order.
    """

    __slots__ = ("_transport", "_credentials", "_addresses")

    def __init__(
        self,
        transport: ShellTransport,
        credentials: Credentials,
        addresses: Sequence[str],
    ) -> None:
        self._transport = transport
        self._credentials = credentials
        self._addresses = tuple(addresses)

    @property
    def addresses(self) -> tuple[str, ...]:
        return self._addresses

    @property
    def username(self) -> str:
        return self._credentials.username

    def __len__(self) -> int:
        return len(self._addresses)

    def _resolve(self, targets: Sequence[int] | None) -> list[tuple[int, str]]:
        if targets is None:
            return list(enumerate(self._addresses))
        resolved = []
        for index in targets:
            if not 0 <= index < len(self._addresses):
                raise ValidationError(
                    f"Target index {index} out of range for {len(self._addresses)} instances"
                )
            resolved.append((index, self._addresses[index]))
        return resolved

    def execute(self, command: str, targets: Sequence[int] | None = None) -> list[CommandResult]:
        """Run ``command`` on each target and return the per-target results.

        Raises:
            ExecutionError: On the first target that exits non-zero.
        """
        results = []
        for index, address in self._resolve(targets):
            logger.info(f"[{address}] $ {command}")
            result = self._transport.execute_command(address, self._credentials, command)
            for line in result.output.splitlines():
                logger.info(f"[{address}] {line}")
            if not result.success:
                raise ExecutionError(
                    f"Command '{command}' failed on instance #{index} ({address}) "
                    f"with exit status {result.exit_status}: {result.stderr.strip()}"
                )
            results.append(result)
        return results

    def upload(self, local_path: Path, remote_path: str, targets: Sequence[int] | None = None) -> None:
        for _, address in self._resolve(targets):
            logger.info(f"[{address}] upload {local_path} -> {remote_path}")
            self._transport.upload_file(address, self._credentials, local_path, remote_path)

    def download(
        self,
        remote_path: str,
        local_path: Path,
        overwrite: bool = False,
        targets: Sequence[int] | None = None,
    ) -> None:
        """Copy ``remote_path`` from each target.

        With one target the file lands at ``local_path``. With several,
        ``local_path`` is a directory holding one subdirectory per address.
        """
        resolved = self._resolve(targets)
        for _, address in resolved:
            destination = local_path
            if len(resolved) > 1:
                destination = local_path / address / PurePosixPath(remote_path).name
            logger.info(f"[{address}] download {remote_path} -> {destination}")
            self._transport.download_file(
                address, self._credentials, remote_path, destination, overwrite,
            )

    def close(self) -> None:
        self._transport.close()

    def __enter__(self) -> ConnectionHandle:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
