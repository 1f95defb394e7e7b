import logging
import math
import re
from dataclasses import dataclass
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)

MIN_FACTOR = 0.5
MAX_FACTOR = 2.0

PRESET_FILTER_GRAPHS: Dict[str, Optional[str]] = {
    "none": None,
    "bassboost": "bass=g=10",
    "nightcore": "asetrate=48000*1.1,atempo=1.1,aresample=48000",
    "vaporwave": "asetrate=44100*0.85,atempo=1,aresample=44100",
    "8d": "apulsator=mode=sine:hz=0.09",
    "karaoke": "stereotools=mlev=0.015",
}

DYNAMIC_FILTER_PATTERN = re.compile(r"^(pitch|speed):(.*)$")


@dataclass(frozen=True)
class PresetFilter:
    name: str = "none"

    @property
    def is_noop(self) -> bool:
        return self.name == "none"

    def filter_graph(self) -> Optional[str]:
        return PRESET_FILTER_GRAPHS[self.name]

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class DynamicFilter:
    kind: str
    factor: float

    @property
    def is_noop(self) -> bool:
        return False

    def filter_graph(self) -> str:
        if self.kind == "pitch":
            return f"asetrate=48000*{self.factor},aresample=48000"
        return f"atempo={self.factor}"

    def __str__(self) -> str:
        return f"{self.kind}:{self.factor}"


FilterSpec = Union[PresetFilter, DynamicFilter]
NO_FILTER = PresetFilter("none")


def clamp_factor(value: float) -> float:
    return max(MIN_FACTOR, min(MAX_FACTOR, value))


def parse_filter(raw: Optional[str]) -> FilterSpec:
    """Convierte el valor recibido en un filtro validado.

    Los nombres desconocidos se tratan como ``none``: un filtro mal escrito
    no debe impedir la reproducción.
    """
    value = (raw or "").strip().lower()
    if not value or value == "none":
        return NO_FILTER
    if value in PRESET_FILTER_GRAPHS:
        return PresetFilter(value)

    match = DYNAMIC_FILTER_PATTERN.match(value)
    if match:
        kind, raw_factor = match.groups()
        try:
            factor = float(raw_factor)
        except ValueError:
            factor = 1.0
        if math.isnan(factor) or factor == 0:
            factor = 1.0
        return DynamicFilter(kind, clamp_factor(factor))

    logger.warning("Filtro desconocido %r, se usa none", raw)
    return NO_FILTER
