from __future__ import annotations

import datetime as _dt
import io
import json
import math
import os
import platform
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import torch


# --------------------------------------------
# JSON utilities (NaN/Inf safe + compact)
# --------------------------------------------


def _json_sanitize(v: Any) -> Any:
    """
    Convert values into JSON-safe primitives.

    Rules:
    - Finite floats are emitted as-is.
    - NaN / ±Inf floats are stringified ("NaN", "Infinity", "-Infinity")
      so they never break json.dumps.
    - torch.Tensors and numpy arrays:
        * small (<= 1024 elements): full .tolist()
        * large: summarized with shape/dtype/min/max/mean
    - Containers are handled recursively.
    - Anything else that json.dumps can't handle is stringified.
    """
    if isinstance(v, float):
        if math.isfinite(v):
            return v
        if math.isnan(v):
            return "NaN"
        return "Infinity" if v > 0 else "-Infinity"

    if isinstance(v, np.generic):
        return _json_sanitize(v.item())

    if isinstance(v, torch.Tensor):
        v = v.detach().cpu().numpy()

    if isinstance(v, np.ndarray):
        if v.size <= 1024:
            return _json_sanitize(v.tolist())
        try:
            return {
                "_type": "array_summary",
                "shape": list(v.shape),
                "dtype": str(v.dtype),
                "min": float(np.nanmin(v)),
                "max": float(np.nanmax(v)),
                "mean": float(np.nanmean(v)),
            }
        except (TypeError, ValueError):
            return {"_type": "array_summary", "shape": list(v.shape), "dtype": str(v.dtype)}

    if isinstance(v, dict):
        return {str(k): _json_sanitize(val) for k, val in v.items()}
    if isinstance(v, (list, tuple)):
        return [_json_sanitize(x) for x in v]
    if isinstance(v, (set, frozenset)):
        return sorted(_json_sanitize(x) for x in v)

    try:
        json.dumps(v)
        return v
    except (TypeError, ValueError):
        return str(v)


def _json_dump_line(obj: Dict[str, Any]) -> str:
    """
    Dump a single JSON object to a compact UTF-8 JSON string, after sanitization.
    """
    return json.dumps(_json_sanitize(obj), separators=(",", ":"), ensure_ascii=False)


# --------------------------------------------
# JSONL Logger (append-only, thread-safe)
# --------------------------------------------


class JsonlLogger:
    """
    Minimal, robust JSONL event logger.

    - Safe for NaN/Inf; values are sanitized.
    - Safe for torch tensors and numpy arrays; large ones are summarized.
    - Never raises to callers (best-effort, IO failures are dropped).
    - .info/.debug/.warning/.error all write a single JSON object per line.
    - Adds "ts", "level", "msg" fields plus any structured k/v pairs.

    Assembly code accepts an optional logger and reports one event per
    operator block, so a run directory keeps a trace of what was built.
    """

    def __init__(self, out_dir: Path | str):
        self.dir = Path(out_dir)
        self.dir.mkdir(parents=True, exist_ok=True)
        self.path = self.dir / "events.jsonl"
        self._lock = threading.Lock()
        self._stream: Optional[io.TextIOBase] = None
        self._open()

    # ----- context manager support -----
    def __enter__(self) -> "JsonlLogger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ----- file handling -----
    def _open(self) -> None:
        try:
            self._stream = self.path.open("a", encoding="utf-8")
        except OSError:
            self._stream = None

    def close(self) -> None:
        """
        Close the underlying stream; future writes will attempt to reopen.
        """
        with self._lock:
            if self._stream is not None:
                try:
                    self._stream.flush()
                    self._stream.close()
                except OSError:
                    pass
            self._stream = None

    # ------------- Core write -------------
    def _emit(self, level: str, msg: str, **fields: Any) -> None:
        rec: Dict[str, Any] = {
            "ts": _dt.datetime.now(_dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "level": level,
            "msg": msg,
        }
        if fields:
            rec.update(fields)

        try:
            line = _json_dump_line(rec)
        except (TypeError, ValueError):
            line = json.dumps({str(k): str(v) for k, v in rec.items()}, ensure_ascii=False)

        with self._lock:
            try:
                if self._stream is None:
                    self._open()
                if self._stream is not None:
                    self._stream.write(line + "\n")
                    self._stream.flush()
            except OSError:
                # logging must never break the caller
                return

    # ------------- Public API (level helpers) -------------
    def info(self, msg: str, **fields: Any) -> None:
        self._emit("INFO", msg, **fields)

    def debug(self, msg: str, **fields: Any) -> None:
        self._emit("DEBUG", msg, **fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._emit("WARN", msg, **fields)

    def error(self, msg: str, **fields: Any) -> None:
        """
        Log an error. If the caller passes exc_info=True, attach traceback text
        into a "trace" field but do not re-raise.
        """
        if fields.pop("exc_info", False):
            import traceback

            fields["trace"] = traceback.format_exc()
        self._emit("ERROR", msg, **fields)

    def phase_start(self, name: str, **fields: Any) -> None:
        """
        Mark the start of a logical phase/section of the run.
        """
        self._emit("INFO", "Phase start", phase=name, **fields)

    def phase_end(self, name: str, **fields: Any) -> None:
        """
        Mark the end of a logical phase/section of the run.
        """
        self._emit("INFO", "Phase end", phase=name, **fields)


# --------------------------------------------
# Runtime environment logging
# --------------------------------------------


def log_runtime_environment(logger: JsonlLogger, **extra: Any) -> None:
    """
    Log a best-effort summary of the runtime environment.

    Includes:
      - Python version / executable
      - Platform
      - numpy and torch versions
      - torch intra-op thread count and cpu count
      - LDL factorization availability
      - MEEGBEM_* environment overrides (if set)
    """
    v: Dict[str, Any] = {
        "python": sys.version.replace("\n", " "),
        "platform": platform.platform(),
        "executable": sys.executable,
        "numpy": np.__version__,
        "torch": getattr(torch, "__version__", "unknown"),
        "torch_threads": torch.get_num_threads(),
        "cpu_count": os.cpu_count(),
        "ldl_available": hasattr(torch.linalg, "ldl_factor_ex"),
    }
    env = {k: val for k, val in os.environ.items() if k.startswith("MEEGBEM_")}
    if env:
        v["env"] = env
    v.update(extra)
    logger.info("Runtime environment.", **v)


__all__ = ["JsonlLogger", "log_runtime_environment"]
