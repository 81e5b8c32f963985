"""
CONTRACT: inline
ROLE: Load YAML config, validate, and expose typed accessors.

INPUTS:
  - Topic: n/a  Type: n/a
OUTPUTS:
  - Topic: n/a  Type: n/a

CONFIG KEYS:
  - config_path: path to YAML file
  - runtime.enable_validation: enable validation on load (bool)

PERF / TIMING:
  - load once at startup

FAILURE MODES:
  - invalid key -> raise ValueError listing every problem

LOG EVENTS:
  - module=core.config, event=validation_failed, payload keys=path, errors

TESTS:
  - tests/test_config.py must cover defaults, merging and validation

CONTRACT DETAILS:
# Config contract

- Files override built-in defaults key by key (deep merge).
- The attendance block is the only input to SessionConfig.
- Validation rejects values the session cannot run with.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

import yaml

from handcall.contracts.messages import record_identifier


SINK_KINDS = {"jsonl", "csv", "memory"}
PERCEPTION_SOURCES = {"hands", "replay"}


def load_config(path: Optional[str]) -> Dict[str, Any]:
    """Load YAML config and apply defaults.

    A missing path yields the defaults alone, which is enough for a replay run.
    """
    data: Dict[str, Any] = {}
    if path:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config root must be a mapping: {path}")
    merged = _merge_dicts(_default_config(), data)
    if bool(get_path(merged, "runtime.enable_validation", False)):
        errors = validate_config(merged)
        if errors:
            joined = "\n".join(f"- {e}" for e in errors)
            raise ValueError(f"Config validation failed for {path}:\n{joined}")
    return merged


def get_path(config: Dict[str, Any], dotted_path: str, default: Any = None) -> Any:
    """Get a nested config value by dotted path."""
    node: Any = config
    for key in dotted_path.split("."):
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    return node


def _default_config() -> Dict[str, Any]:
    return {
        "runtime": {
            "run_id": "",
            "fail_fast": True,
            "enable_validation": True,
            "artifacts": {
                "dir": "artifacts",
                "retention": {
                    "max_runs": 10,
                },
            },
        },
        "bus": {
            "max_queue_depth": 8,
        },
        "logging": {
            "level": "info",
            "file": {
                "enabled": True,
                "flush_interval_ms": 200,
                "rotate_mb": 20,
            },
        },
        "ui": {
            "host": "127.0.0.1",
            "port": 8080,
            "telemetry_hz": 10,
        },
        "video": {
            "camera": {
                "id": "cam0",
                "device_index": 0,
                "device_path": None,
                "width": 640,
                "height": 480,
                "fps": 30,
                # The dashboard shows a mirrored preview.
                "flip_horizontal": True,
            },
        },
        "perception": {
            "source": "hands",
            "hands": {
                "max_hands": 2,
                "min_detection_confidence": 0.5,
                "min_presence_confidence": 0.5,
                "min_tracking_confidence": 0.5,
                "model_path": "",
            },
            "replay": {
                "path": "",
                "loop": False,
                "signals": [],
            },
        },
        "attendance": {
            "hold_threshold_ms": 1500,
            "grace_ms": 0,
            "strict_sequencing": False,
            "max_subjects": None,
            "auto_confirm": True,
            "roster_path": "",
            "roster": [],
            "sink": {
                "kind": "jsonl",
                "path": "",
            },
            "export": {
                "path": "",
            },
            "snapshots": {
                "enabled": False,
                "dir": "",
            },
        },
    }


def _merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge_dicts(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def validate_config(config: Dict[str, Any]) -> List[str]:
    """Return a list of validation errors for the merged config."""
    errors: List[str] = []

    attendance = config.get("attendance", {})
    if not isinstance(attendance, dict):
        errors.append("attendance must be a mapping")
        attendance = {}
    threshold = _as_number(attendance.get("hold_threshold_ms"))
    if threshold is None or threshold <= 0:
        errors.append("attendance.hold_threshold_ms must be > 0")
    grace = _as_number(attendance.get("grace_ms", 0))
    if grace is None or grace < 0:
        errors.append("attendance.grace_ms must be >= 0")
    max_subjects = attendance.get("max_subjects")
    if max_subjects is not None:
        bound = _as_number(max_subjects)
        if bound is None or bound < 0 or int(bound) != bound:
            errors.append("attendance.max_subjects must be a non-negative integer or null")

    sink_cfg = attendance.get("sink", {})
    if not isinstance(sink_cfg, dict):
        errors.append("attendance.sink must be a mapping")
    else:
        kind = str(sink_cfg.get("kind", "") or "").lower()
        if kind not in SINK_KINDS:
            errors.append(f"attendance.sink.kind '{kind}' must be one of {sorted(SINK_KINDS)}")

    roster = attendance.get("roster", [])
    if roster and not isinstance(roster, list):
        errors.append("attendance.roster must be a list")
    elif roster:
        seen = set()
        for index, entry in enumerate(roster):
            identifier = record_identifier(entry) if isinstance(entry, dict) else ""
            if not identifier:
                errors.append(f"attendance.roster[{index}] needs an identifier")
                continue
            if identifier in seen:
                errors.append(f"attendance.roster has duplicate identifier '{identifier}'")
            seen.add(identifier)

    camera = get_path(config, "video.camera", {})
    if not isinstance(camera, dict):
        errors.append("video.camera must be a mapping")
    else:
        fps = _as_number(camera.get("fps"))
        if fps is None or fps <= 0:
            errors.append("video.camera.fps must be > 0")

    source = str(get_path(config, "perception.source", "") or "").lower()
    if source not in PERCEPTION_SOURCES:
        errors.append(f"perception.source '{source}' must be one of {sorted(PERCEPTION_SOURCES)}")
    if source == "replay":
        replay = get_path(config, "perception.replay", {}) or {}
        if not replay.get("path") and not replay.get("signals"):
            errors.append("perception.source=replay requires perception.replay.path or perception.replay.signals")

    port = _as_number(get_path(config, "ui.port", 0))
    if port is None or not 0 <= port <= 65535:
        errors.append("ui.port must be in 0..65535")

    return errors


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
