"""
Credential delivery.

Hands the JIT token to whoever starts the runner: standard output (the
default process-local handoff), a file written atomically, or the runner's
own command line.
"""

import asyncio
import contextlib
import logging
import os
import shlex
import sys
import tempfile
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, List, Optional, TextIO

from cred_tool.core.constants import (
    DEFAULT_OUTPUT_FILE_MODE,
    OUTPUT_EXEC_PREFIX,
    OUTPUT_FILE_PREFIX,
    OUTPUT_STDOUT,
    RUNNER_JITCONFIG_FLAG,
)
from cred_tool.core.errors import ConfigurationError, DeliveryFailure
from cred_tool.models.credentials import RunnerRegistrationToken
from cred_tool.models.pipeline import PipelineState

if TYPE_CHECKING:
    from cred_tool.core.config import Settings

logger = logging.getLogger(__name__)

_STAGE = PipelineState.DELIVERING.value


def write_atomic(path: str, data: bytes, mode: int = DEFAULT_OUTPUT_FILE_MODE) -> None:
    """
    Write data to path so that readers see either the old file or the complete new one.

    The temp file lives in the target directory (same filesystem for
    os.replace) and gets its final mode before any byte is written.
    """
    target = os.path.abspath(path)
    directory = os.path.dirname(target)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(target)}.", suffix=".tmp")
    try:
        os.fchmod(fd, mode)
        view = memoryview(data)
        while view:
            written = os.write(fd, view)
            view = view[written:]
        os.fsync(fd)
        os.close(fd)
        fd = -1
        os.replace(tmp_path, target)
    except BaseException:
        if fd >= 0:
            os.close(fd)
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise

    try:
        dir_fd = os.open(directory, os.O_RDONLY)
    except OSError as e:
        logger.debug(f"Could not open {directory} to sync the rename: {e}")
        return
    try:
        os.fsync(dir_fd)
    except OSError as e:
        logger.debug(f"Could not sync {directory}: {e}")
    finally:
        os.close(dir_fd)


class CredentialDelivery(ABC):
    destination: str

    @abstractmethod
    async def deliver(self, token: RunnerRegistrationToken) -> None:
        """
        Write the token value to the destination in full, or not at all.
        :param token: The registration token to hand off
        """
        pass


class StdoutDelivery(CredentialDelivery):
    destination = OUTPUT_STDOUT

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream

    async def deliver(self, token: RunnerRegistrationToken) -> None:
        stream = self._stream or sys.stdout
        try:
            stream.write(f"{token.value.get_secret_value()}\n")
            stream.flush()
        except (OSError, ValueError) as e:
            raise DeliveryFailure(f"Could not write token to standard output: {e}", stage=_STAGE) from None
        logger.info(f"Delivered JIT token for '{token.runner_name}' to {self.destination}")


class FileDelivery(CredentialDelivery):
    def __init__(self, path: str, mode: int = DEFAULT_OUTPUT_FILE_MODE):
        self.path = path
        self.mode = mode
        self.destination = f"{OUTPUT_FILE_PREFIX}{path}"

    async def deliver(self, token: RunnerRegistrationToken) -> None:
        data = token.value.get_secret_value().encode("utf-8")
        # Once started the write runs to completion; a cancel waits for it.
        write = asyncio.ensure_future(asyncio.to_thread(write_atomic, self.path, data, self.mode))
        try:
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError:
                logger.warning(f"Cancelled while writing {self.path}; finishing the write")
                await write
        except OSError as e:
            raise DeliveryFailure(
                f"Could not write token to {self.path}: {e.strerror or e}", stage=_STAGE
            ) from None
        logger.info(
            f"Delivered JIT token for '{token.runner_name}' to {self.destination} (mode {self.mode:o})"
        )


class ExecDelivery(CredentialDelivery):
    """
    Passes the token to the runner as `--jitconfig <token>`.

    deliver() only checks the runner binary and prepares its argv;
    launch() replaces this process with the runner once the pipeline is done.
    """

    def __init__(self, command: List[str], execv: Callable[[str, List[str]], None] = os.execv):
        if not command:
            raise ConfigurationError("exec output needs a runner command")
        self.command = command
        self.destination = f"{OUTPUT_EXEC_PREFIX}{shlex.join(command)}"
        self._execv = execv
        self._argv: Optional[List[str]] = None

    async def deliver(self, token: RunnerRegistrationToken) -> None:
        binary = self.command[0]
        if not os.path.isfile(binary) or not os.access(binary, os.X_OK):
            raise DeliveryFailure(f"Runner binary {binary} is missing or not executable", stage=_STAGE)
        self._argv = [*self.command, RUNNER_JITCONFIG_FLAG, token.value.get_secret_value()]
        logger.info(f"Prepared {self.destination} for runner '{token.runner_name}'")

    @property
    def ready(self) -> bool:
        return self._argv is not None

    def launch(self) -> None:
        if self._argv is None:
            raise RuntimeError("launch() called before a token was delivered")
        logger.info(f"Starting runner {self.command[0]}")
        for handler in logging.getLogger().handlers:
            handler.flush()
        try:
            self._execv(self.command[0], self._argv)
        except OSError as e:
            raise DeliveryFailure(
                f"Could not start runner {self.command[0]}: {e.strerror or e}", stage=_STAGE
            ) from None


def delivery_from_settings(settings: "Settings") -> CredentialDelivery:
    output = settings.OUTPUT
    if output == OUTPUT_STDOUT:
        return StdoutDelivery()
    if output.startswith(OUTPUT_FILE_PREFIX):
        return FileDelivery(output[len(OUTPUT_FILE_PREFIX):], mode=settings.OUTPUT_FILE_MODE)
    if output.startswith(OUTPUT_EXEC_PREFIX):
        try:
            command = shlex.split(output[len(OUTPUT_EXEC_PREFIX):])
        except ValueError as e:
            raise ConfigurationError(f"Invalid exec output command: {e}") from None
        return ExecDelivery(command)
    raise ConfigurationError(f"Unknown output destination: {output}")
