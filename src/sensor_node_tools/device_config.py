"""Configuration documents and their translation into device CLI commands.

A configuration document is a JSON object whose members are all optional::

    {
      "node_id": "A1",
      "i2c": {"sda": 21, "scl": 22, "hz": 400000},
      "fmt": "json",
      "json_pretty": true,
      "live_ms": 1000,
      "rates": {"amb": 5, "env": 30},
      "thresholds": {"co2": {"warn": 1000, "crit": 1500}},
      "led": {"mode": "auto", "bright": 64, "rgb": [0, 255, 0]},
      "sound": false
    }

``parse_config`` validates it once into a ``DeviceConfig`` whose fields are
``None`` when absent.  ``translate`` maps present fields to commands in a
fixed order; ``build_command_plan`` wraps that body with the diagnostic
preamble, optional calibration commands and the save/show trailer.
"""

from __future__ import annotations

import dataclasses
import functools
import json
import logging
import sys
from importlib import resources
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from jsonschema import ValidationError, validators
from typeguard import typechecked

from .exceptions import ConfigParseError
from .types import CommandSequence

logger = logging.getLogger("sensor_node_tools.device_config")

METRICS = ("iaq", "co2", "voc", "temp", "rh")

PREAMBLE = ("poster", "status")
TRAILER = ("cfg save", "cfg show", "status", "telem")

_TOP_LEVEL_KEYS = (
    "node_id", "i2c", "fmt", "json_pretty", "live_ms",
    "rates", "thresholds", "led", "sound",
)

Number = Union[int, float]


@dataclasses.dataclass(frozen=True)
class I2CConfig:
    sda: int
    scl: int
    hz: Optional[int] = None


@dataclasses.dataclass(frozen=True)
class RatesConfig:
    amb: Optional[Union[Number, str]] = None
    env: Optional[Union[Number, str]] = None


@dataclasses.dataclass(frozen=True)
class Threshold:
    warn: Optional[Number] = None
    crit: Optional[Number] = None


@dataclasses.dataclass(frozen=True)
class LedConfig:
    mode: Optional[str] = None
    bright: Optional[int] = None
    rgb: Optional[Tuple[Number, Number, Number]] = None


@dataclasses.dataclass(frozen=True)
class DeviceConfig:
    """Validated configuration document; ``None`` means "field absent"."""
    node_id: Optional[str] = None
    i2c: Optional[I2CConfig] = None
    fmt: Optional[str] = None
    json_pretty: Optional[bool] = None
    live_ms: Optional[int] = None
    rates: Optional[RatesConfig] = None
    thresholds: Optional[Dict[str, Threshold]] = None
    led: Optional[LedConfig] = None
    sound: Optional[bool] = None


# ---------------------------------------------------------------------------
# Parsing / validation
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@functools.lru_cache(maxsize=None)
def _schema_validator() -> Any:
    schema_text = resources.files("sensor_node_tools.schemas").joinpath(
        "device_config.schema.json"
    ).read_text(encoding="utf-8")
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _validate(document: Any) -> None:
    try:
        _schema_validator().validate(document)
    except ValidationError as exc:
        field = ".".join(str(p) for p in exc.absolute_path) or None
        # every "not" in the schema guards against embedded line breaks
        message = "must not contain line breaks" if exc.validator == "not" else exc.message
        if field is None:
            raise ConfigParseError(f"Config document is invalid: {message}") from exc
        raise ConfigParseError(f"Invalid '{field}': {message}", field=field) from exc


def _optional_int(obj: Mapping[str, Any], key: str) -> Optional[int]:
    return int(obj[key]) if key in obj else None


def _build_i2c(obj: Mapping[str, Any]) -> Optional[I2CConfig]:
    if "sda" not in obj:
        return None
    return I2CConfig(sda=int(obj["sda"]), scl=int(obj["scl"]), hz=_optional_int(obj, "hz"))


def _build_led(obj: Mapping[str, Any]) -> LedConfig:
    rgb = None
    if "rgb" in obj:
        values = obj["rgb"]
        if isinstance(values, list) and len(values) >= 3 and all(_is_number(v) for v in values[:3]):
            rgb = (values[0], values[1], values[2])
        else:
            logger.warning("[CONFIG] Ignoring 'led.rgb' %r: need three numeric entries", values)
    return LedConfig(mode=obj.get("mode"), bright=_optional_int(obj, "bright"), rgb=rgb)


def parse_config(document: Any) -> DeviceConfig:
    """Validate a decoded JSON document into a ``DeviceConfig``.

    The document is checked against ``schemas/device_config.schema.json``;
    the first violation is reported with its dotted field path.

    Raises:
        ConfigParseError: If any present field has the wrong shape.
    """
    _validate(document)
    doc = document

    for key in doc:
        if key not in _TOP_LEVEL_KEYS:
            logger.warning("[CONFIG] Ignoring unknown field %r", key)

    rates = None
    if "rates" in doc:
        rates = RatesConfig(amb=doc["rates"].get("amb"), env=doc["rates"].get("env"))

    thresholds = None
    if "thresholds" in doc:
        thresholds = {
            metric: Threshold(warn=entry.get("warn"), crit=entry.get("crit"))
            for metric, entry in doc["thresholds"].items()
        }

    return DeviceConfig(
        node_id=doc.get("node_id"),
        i2c=_build_i2c(doc["i2c"]) if "i2c" in doc else None,
        fmt=doc.get("fmt"),
        json_pretty=bool(doc["json_pretty"]) if "json_pretty" in doc else None,
        live_ms=_optional_int(doc, "live_ms"),
        rates=rates,
        thresholds=thresholds,
        led=_build_led(doc["led"]) if "led" in doc else None,
        sound=bool(doc["sound"]) if "sound" in doc else None,
    )


def load_config(path: str) -> DeviceConfig:
    """Read and validate a JSON document from *path* (``-`` reads stdin).

    Raises:
        ConfigParseError: If the file cannot be read, is not JSON, or fails
            validation.
    """
    try:
        if path == "-":
            text = sys.stdin.read()
        else:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
    except OSError as exc:
        raise ConfigParseError(f"Cannot read config {path!r}: {exc}") from exc

    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigParseError(
            f"Config {path!r} is not valid JSON: {exc.msg} (line {exc.lineno}, column {exc.colno})"
        ) from exc

    config = parse_config(document)
    logger.info("[CONFIG] Loaded %s", path)
    return config


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def _fmt(value: Union[Number, str]) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


@typechecked
def translate(config: DeviceConfig) -> CommandSequence:
    """Map present config fields to device commands, in fixed order."""
    commands = []

    if config.node_id:
        commands.append(f"node {config.node_id}")

    if config.i2c is not None:
        i2c = config.i2c
        line = f"i2c {i2c.sda} {i2c.scl}"
        if i2c.hz is not None:
            line += f" {i2c.hz}"
        commands.extend([line, "scan", "probe"])

    if config.fmt is not None:
        commands.append(f"fmt {config.fmt}")

    if config.json_pretty is not None:
        commands.append(f"json pretty {int(config.json_pretty)}")

    if config.live_ms is not None:
        commands.append(f"live {config.live_ms}")

    if config.rates is not None:
        emitted = False
        for name in ("amb", "env"):
            value = getattr(config.rates, name)
            if value is not None:
                commands.append(f"rate {name} {_fmt(value)}")
                emitted = True
        if emitted:
            commands.append("probe")

    if config.thresholds is not None:
        for metric in METRICS:
            thr = config.thresholds.get(metric)
            if thr is not None and thr.warn is not None and thr.crit is not None:
                commands.append(f"thr set {metric} {_fmt(thr.warn)} {_fmt(thr.crit)}")
        commands.append("thr show")

    if config.led is not None:
        led = config.led
        if led.mode is not None:
            commands.append(f"led mode {led.mode}")
        if led.bright is not None:
            commands.append(f"led bright {led.bright}")
        if led.rgb is not None:
            commands.append("led rgb " + " ".join(_fmt(v) for v in led.rgb))

    if config.sound is not None:
        commands.append(f"sound {int(config.sound)}")

    return commands


@typechecked
def build_command_plan(
    config: DeviceConfig,
    cal_load: bool = False,
    cal_save: bool = False,
) -> CommandSequence:
    """Full ordered dialogue: preamble, body, calibration, trailer."""
    plan = list(PREAMBLE)
    plan.extend(translate(config))
    if cal_load:
        plan.append("cal load")
    if cal_save:
        plan.append("cal save")
    plan.extend(TRAILER)
    return plan
