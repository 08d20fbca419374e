from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import tempfile
from collections.abc import Mapping
from typing import Protocol

from ingresslb.src.model import IngressConfig, TLSCred

CONFIG_FILE_NAME = "ingress.json"
RELOAD_TIMEOUT_SECONDS = 30


class SinkError(RuntimeError):
    """Raised when a configuration could not be written or the proxy refused to reload."""


class ProxySink(Protocol):
    """Receiver of resolved configuration.

    The sink alone decides whether a new model warrants a reload.
    """

    def read_config(self, model: IngressConfig, tuning_options: Mapping[str, str]) -> None: ...

    def check_and_reload(self, model: IngressConfig) -> bool: ...


def render_config(model: IngressConfig, tuning_options: Mapping[str, str]) -> str:
    """Render the model as canonical JSON.  Identical inputs give identical text."""
    document = model.to_dict()
    document["tuningOptions"] = dict(tuning_options)
    return json.dumps(document, sort_keys=True, indent=2) + "\n"


def _write_atomic(path: str, data: bytes, mode: int = 0o644) -> None:
    directory = os.path.dirname(path) or "."
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class FileConfigSink:
    """Writes the rendered configuration and TLS files to disk.

    A model whose rendering matches the last applied one is not written
    again.  When ``reload_command`` is set it runs after every write and a
    non-zero exit status is reported as a :class:`SinkError`.
    """

    def __init__(
        self,
        conf_dir: str,
        reload_command: str = "",
        logger: logging.Logger | None = None,
    ) -> None:
        self.conf_dir = conf_dir
        self.reload_command = reload_command
        self.logger = logger or logging.getLogger(__name__)
        self._pending: str | None = None
        self._applied: str | None = None
        self._loaded_applied = False
        self._cert_checksums: dict[str, str] = {}

    @property
    def tls_dir(self) -> str:
        return os.path.join(self.conf_dir, "tls")

    @property
    def config_path(self) -> str:
        return os.path.join(self.conf_dir, CONFIG_FILE_NAME)

    def read_config(self, model: IngressConfig, tuning_options: Mapping[str, str]) -> None:
        self._pending = render_config(model, tuning_options)

    def _read_applied(self) -> str | None:
        """Return the configuration left by a previous process, if any."""
        try:
            with open(self.config_path, encoding="utf-8") as handle:
                return handle.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            self.logger.warning("Could not read %s: %s", self.config_path, exc)
            return None

    def check_and_reload(self, model: IngressConfig) -> bool:
        if self._pending is None:
            raise SinkError("check_and_reload called before read_config")
        if not self._loaded_applied:
            self._loaded_applied = True
            self._applied = self._read_applied()

        if self._pending == self._applied:
            self.logger.debug("Configuration unchanged; not reloading")
            return False

        try:
            os.makedirs(self.tls_dir, exist_ok=True)
            self._write_credentials(model)
            _write_atomic(self.config_path, self._pending.encode())
        except OSError as exc:
            raise SinkError(f"could not write configuration to {self.conf_dir}: {exc}") from exc

        self._run_reload_command()
        self._applied = self._pending
        self.logger.info("Wrote new proxy configuration to %s", self.config_path)
        return True

    def _write_credentials(self, model: IngressConfig) -> None:
        creds: list[TLSCred] = list(model.sub_tls_creds)
        if model.default_tls_cred is not None:
            creds.insert(0, model.default_tls_cred)
        for cred in creds:
            if self._cert_checksums.get(cred.identity) == cred.checksum:
                continue
            _write_atomic(cred.key_path, cred.key, mode=0o600)
            _write_atomic(cred.cert_path, cred.cert)
            self._cert_checksums[cred.identity] = cred.checksum
            self.logger.debug("Wrote TLS credential %s", cred.identity)

    def _run_reload_command(self) -> None:
        if not self.reload_command:
            return
        try:
            subprocess.run(  # noqa: S603
                shlex.split(self.reload_command),
                check=True,
                capture_output=True,
                timeout=RELOAD_TIMEOUT_SECONDS,
            )
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.decode(errors="replace").strip() if exc.stderr else ""
            raise SinkError(
                f"reload command exited with status {exc.returncode}: {stderr}"
            ) from exc
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise SinkError(f"reload command failed: {exc}") from exc
