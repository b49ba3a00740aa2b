from __future__ import annotations
import copy
import json
import logging
import os

from solderbot.core.data_types import SequenceConfig

CONFIG_FILE = "config.json"

DEFAULT_CONFIG = {
    "port": "",
    "baud": 115200,
    "simulated": False,
    "heartbeat_timeout_ms": 2000,
    "wire": {
        "diameter_mm": 0.5,
        "feed_rate_mm_s": 8.0,
        "default_length_mm": 5.0
    },
    "tip": {
        "base_temp_c": 345
    },
    "sequence": {
        "pre_heat_dwell_ms": 500,
        "cooling_ms": 1000,
        "flux_before_pre_heat": True,
        "multiple_passes": True,
        "large_pad_threshold_mm2": 10.0,
        "passes_per_large_pad": 2
    },
    "run": {
        "retract_clearance_mm": 7.5,
        "flux_mist_ms": 500,
        "air_jet_ms": 200,
        "cleaning": True,
        "dispense_timeout_ms": 10000
    },
    "jog_step_mm": 1.0
}


def _merge(base: dict, loaded: dict) -> dict:
    for key, value in loaded.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path: str = CONFIG_FILE) -> dict:
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if os.path.exists(path):
        try:
            with open(path, encoding="utf-8") as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                _merge(cfg, loaded)
        except (OSError, json.JSONDecodeError) as e:
            # keep defaults, leave the file alone so the operator can fix it
            logging.error(f"Config load error ({path}): {e}")
    return cfg


def save_config(cfg: dict, path: str = CONFIG_FILE):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2)


def sequence_config_from(cfg: dict) -> SequenceConfig:
    seq = cfg.get("sequence", {})
    defaults = SequenceConfig()
    return SequenceConfig(
        pre_heat_dwell_ms=int(seq.get("pre_heat_dwell_ms", defaults.pre_heat_dwell_ms)),
        cooling_ms=int(seq.get("cooling_ms", defaults.cooling_ms)),
        flux_before_pre_heat=bool(seq.get("flux_before_pre_heat", defaults.flux_before_pre_heat)),
        multiple_passes=bool(seq.get("multiple_passes", defaults.multiple_passes)),
        large_pad_threshold_mm2=float(seq.get("large_pad_threshold_mm2", defaults.large_pad_threshold_mm2)),
        passes_per_large_pad=int(seq.get("passes_per_large_pad", defaults.passes_per_large_pad)),
    )


def store_sequence_config(cfg: dict, seq: SequenceConfig):
    cfg["sequence"] = {
        "pre_heat_dwell_ms": seq.pre_heat_dwell_ms,
        "cooling_ms": seq.cooling_ms,
        "flux_before_pre_heat": seq.flux_before_pre_heat,
        "multiple_passes": seq.multiple_passes,
        "large_pad_threshold_mm2": seq.large_pad_threshold_mm2,
        "passes_per_large_pad": seq.passes_per_large_pad,
    }
