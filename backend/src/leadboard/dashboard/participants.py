"""leadboard.dashboard.participants

Snapshot de participantes activos (miners en la red).

La obtención del snapshot es externa: un proceso que imprime un JSON con la
forma::

    {"hotkeyToUid": {...}, "uidToHotkey": {...}, "incentives": {...},
     "emissions": {...}, "stakes": {...}, "isValidator": {...},
     "totalNeurons": 256, "error": null}

Aquí solo se adapta ese JSON a :class:`ParticipantSnapshot` y se aplica la
política *fail-open*: si el proveedor falla, tarda demasiado o devuelve un
mapa vacío, el dashboard trabaja sin filtro de participantes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..observability.bus_eventos import EventBus
from ..observability.eventos_dashboard import emit_snapshot_unavailable

logger = logging.getLogger(__name__)


class SnapshotError(RuntimeError):
    """El proveedor externo no devolvió un snapshot utilizable."""


class ParticipantSnapshot(BaseModel):
    """Metadatos de participantes. Acepta el JSON externo en camelCase."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    hotkey_to_uid: Dict[str, int] = Field(default_factory=dict, alias="hotkeyToUid")
    uid_to_hotkey: Dict[int, str] = Field(default_factory=dict, alias="uidToHotkey")
    incentives: Dict[str, float] = Field(default_factory=dict)
    emissions: Dict[str, float] = Field(default_factory=dict)
    stakes: Dict[str, float] = Field(default_factory=dict)
    is_validator: Dict[str, bool] = Field(default_factory=dict, alias="isValidator")
    total_neurons: int = Field(0, alias="totalNeurons")
    error: Optional[str] = None

    @classmethod
    def empty(cls, error: Optional[str] = None) -> "ParticipantSnapshot":
        return cls(error=error)

    @property
    def available(self) -> bool:
        return bool(self.hotkey_to_uid)

    def active_participants(self) -> Optional[FrozenSet[str]]:
        """Hotkeys activos, o ``None`` si el filtro no debe aplicarse."""
        return frozenset(self.hotkey_to_uid) if self.hotkey_to_uid else None

    def uid_for(self, hotkey: str) -> Optional[int]:
        return self.hotkey_to_uid.get(hotkey)

    def incentive_pct(self, hotkey: str) -> Optional[float]:
        """Incentivo del participante como porcentaje (el proveedor usa 0..1)."""
        uid = self.uid_for(hotkey)
        if uid is None:
            return None
        value = self.incentives.get(str(uid), self.incentives.get(hotkey))
        return None if value is None else float(value) * 100.0


class SnapshotProvider:
    """Proveedor base: nunca tiene snapshot (modo sin filtro)."""

    async def get_snapshot(self) -> ParticipantSnapshot:
        return ParticipantSnapshot.empty()


class StaticSnapshotProvider(SnapshotProvider):
    """Devuelve siempre el mismo snapshot (tests y modo local)."""

    def __init__(self, snapshot: Optional[ParticipantSnapshot] = None) -> None:
        self._snapshot = snapshot or ParticipantSnapshot.empty()
        self.calls = 0

    async def get_snapshot(self) -> ParticipantSnapshot:
        self.calls += 1
        return self._snapshot


class CommandSnapshotProvider(SnapshotProvider):
    """
    Ejecuta ``LB_SNAPSHOT_CMD`` y parsea su stdout como JSON.

    Parameters
    ----------
    command : str
        Comando completo (se separa con ``shlex``; no pasa por shell).
    timeout_s : float
        Tiempo máximo de ejecución; al vencer se mata el proceso.
    """

    def __init__(self, command: str, timeout_s: float = 120.0) -> None:
        self._argv = shlex.split(command)
        self._timeout_s = timeout_s

    async def _run(self) -> bytes:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SnapshotError(f"no se pudo lanzar {self._argv[0]!r}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise SnapshotError(f"timeout tras {self._timeout_s:.0f}s") from exc

        if proc.returncode != 0:
            tail = stderr.decode("utf-8", "replace").strip()[-200:]
            raise SnapshotError(f"exit code {proc.returncode}: {tail}")
        return stdout

    async def get_snapshot(self) -> ParticipantSnapshot:
        stdout = await self._run()
        try:
            return ParticipantSnapshot.model_validate(json.loads(stdout))
        except (ValueError, ValidationError) as exc:
            raise SnapshotError(f"salida inválida: {exc}") from exc


async def load_snapshot(
    provider: Optional[SnapshotProvider], *, bus: Optional[EventBus] = None
) -> ParticipantSnapshot:
    """
    Obtiene el snapshot aplicando fail-open.

    Cualquier fallo del proveedor (o un snapshot vacío o con ``error``) se
    loguea en WARNING, se publica ``snapshot.unavailable`` y se devuelve un
    snapshot vacío (sin filtro).
    """
    if provider is None:
        return ParticipantSnapshot.empty()
    try:
        snapshot = await provider.get_snapshot()
    except SnapshotError as exc:
        logger.warning("Snapshot de participantes no disponible: %s (sin filtro)", exc)
        emit_snapshot_unavailable(str(exc), bus=bus)
        return ParticipantSnapshot.empty(error=str(exc))
    except Exception as exc:
        logger.exception("Proveedor de snapshot falló inesperadamente (sin filtro)")
        emit_snapshot_unavailable(repr(exc), bus=bus)
        return ParticipantSnapshot.empty(error=repr(exc))

    if snapshot.error:
        logger.warning("Snapshot de participantes con error: %s (sin filtro)", snapshot.error)
        emit_snapshot_unavailable(snapshot.error, bus=bus)
        return ParticipantSnapshot.empty(error=snapshot.error)
    if not snapshot.available:
        logger.warning("Snapshot de participantes vacío (sin filtro)")
        emit_snapshot_unavailable(None, bus=bus)
    return snapshot


def build_snapshot_provider(command: Optional[str], timeout_s: float = 120.0) -> Optional[SnapshotProvider]:
    """``None`` si no hay comando configurado (el dashboard corre sin filtro)."""
    if command:
        return CommandSnapshotProvider(command, timeout_s=timeout_s)
    return None


__all__ = [
    "SnapshotError",
    "ParticipantSnapshot",
    "SnapshotProvider",
    "StaticSnapshotProvider",
    "CommandSnapshotProvider",
    "load_snapshot",
    "build_snapshot_provider",
]
