"""Outpaint canvas expansion heuristics.

Expansion sizes come from a fixed table of ratios per direction and
intensity, applied to the bounds of the image being extended.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from typus.utils.logging import get_logger
from typus.utils.time import utcnow


logger = get_logger('canvas')

INTENSITIES = ('MINIMAL', 'SMALL', 'MEDIUM', 'LARGE')

EXPANSION_RATIOS: Dict[str, Dict[str, float]] = {
    'RIGHT': {'MINIMAL': 0.001, 'SMALL': 0.03, 'MEDIUM': 0.07, 'LARGE': 0.10},
    'TOP': {'MINIMAL': 0.001, 'SMALL': 0.05, 'MEDIUM': 0.09, 'LARGE': 0.12},
    'BOTTOM': {'MINIMAL': 0.001, 'SMALL': 0.02, 'MEDIUM': 0.05, 'LARGE': 0.10},
    'LEFT': {'MINIMAL': 0.001, 'SMALL': 0.03, 'MEDIUM': 0.07, 'LARGE': 0.10},
}

OUTPAINT_MODES: Dict[str, Dict[str, Any]] = {
    'right': {'directions': ['RIGHT'], 'intensity': 'MEDIUM'},
    'left': {'directions': ['LEFT'], 'intensity': 'MEDIUM'},
    'top': {'directions': ['TOP'], 'intensity': 'MEDIUM'},
    'bottom': {'directions': ['BOTTOM'], 'intensity': 'SMALL'},
    'top-right': {'directions': ['TOP', 'RIGHT'], 'intensity': 'MEDIUM'},
    'top-left': {'directions': ['TOP', 'LEFT'], 'intensity': 'MEDIUM'},
    'bottom-right': {'directions': ['BOTTOM', 'RIGHT'], 'intensity': 'SMALL'},
    'bottom-left': {'directions': ['BOTTOM', 'LEFT'], 'intensity': 'SMALL'},
    'horizontal': {'directions': ['LEFT', 'RIGHT'], 'intensity': 'MEDIUM'},
    'vertical': {'directions': ['TOP', 'BOTTOM'], 'intensity': 'MEDIUM'},
    'all': {'directions': ['TOP', 'BOTTOM', 'LEFT', 'RIGHT'], 'intensity': 'SMALL'},
}


@dataclass
class ImageBounds:
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> Optional['ImageBounds']:
        if not isinstance(data, dict):
            return None
        try:
            bounds = cls(
                x=float(data.get('x') or 0),
                y=float(data.get('y') or 0),
                width=float(data.get('width') or 0),
                height=float(data.get('height') or 0),
            )
        except (TypeError, ValueError):
            return None
        # JSON bodies may carry Infinity or NaN.
        if not all(math.isfinite(v) for v in (bounds.x, bounds.y, bounds.width, bounds.height)):
            raise ValueError('invalid_bounds')
        return bounds

    def has_size(self) -> bool:
        return self.width > 0 and self.height > 0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class OutpaintBounds:
    top: int = 0
    bottom: int = 0
    left: int = 0
    right: int = 0

    def is_empty(self) -> bool:
        return not (self.top or self.bottom or self.left or self.right)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class ExpansionResult:
    canvas_bounds: ImageBounds
    outpaint_bounds: OutpaintBounds
    expansions: OutpaintBounds
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'canvasBounds': self.canvas_bounds.to_dict(),
            'outpaintBounds': self.outpaint_bounds.to_dict(),
            'expansions': self.expansions.to_dict(),
            'metadata': self.metadata,
        }


def _round_half_up(value: float, places: int = 0) -> Decimal:
    exponent = Decimal(1).scaleb(-places)
    return Decimal(str(value)).quantize(exponent, rounding=ROUND_HALF_UP)


def predict_canvas_expansion(
    operation_type: str,
    bounds: ImageBounds | None,
    intensity: str | None = None,
) -> ExpansionResult:
    if not operation_type or bounds is None:
        raise ValueError('operation_and_bounds_required')
    if not bounds.has_size():
        raise ValueError('bounds_size_required')

    operation = OUTPAINT_MODES.get(operation_type)
    if not operation:
        raise ValueError('unknown_operation')

    use_intensity = (intensity or operation['intensity']).upper()
    if use_intensity not in INTENSITIES:
        raise ValueError('unknown_intensity')

    expansions = OutpaintBounds()
    ratios_used: Dict[str, float] = {}
    for direction in operation['directions']:
        ratio = EXPANSION_RATIOS[direction][use_intensity]
        key = direction.lower()
        ratios_used[key] = ratio
        side = bounds.height if direction in ('TOP', 'BOTTOM') else bounds.width
        setattr(expansions, key, int(_round_half_up(side * ratio)))

    canvas = ImageBounds(
        x=bounds.x - expansions.left,
        y=bounds.y - expansions.top,
        width=bounds.width + expansions.left + expansions.right,
        height=bounds.height + expansions.top + expansions.bottom,
    )
    return ExpansionResult(
        canvas_bounds=canvas,
        outpaint_bounds=OutpaintBounds(**expansions.to_dict()),
        expansions=expansions,
        metadata={
            'operationType': operation_type,
            'intensity': use_intensity,
            'directions': list(operation['directions']),
            'ratiosUsed': ratios_used,
            'predictedAt': utcnow().isoformat(),
        },
    )


def detect_operation_type(original: ImageBounds, new: ImageBounds, tolerance: float = 5) -> Optional[str]:
    extended: List[str] = []
    if new.y < original.y - tolerance:
        extended.append('TOP')
    if new.bottom > original.bottom + tolerance:
        extended.append('BOTTOM')
    if new.x < original.x - tolerance:
        extended.append('LEFT')
    if new.right > original.right + tolerance:
        extended.append('RIGHT')

    if not extended:
        return None
    detected = sorted(extended)
    for operation_type, config in OUTPAINT_MODES.items():
        if sorted(config['directions']) == detected:
            return operation_type
    return None


def auto_extend_canvas_bounds(
    operation_type: str,
    bounds: ImageBounds,
    intensity: str | None = None,
) -> Tuple[ImageBounds, OutpaintBounds]:
    prediction = predict_canvas_expansion(operation_type, bounds, intensity)
    logger.info(
        'canvas_auto_extended',
        operation=operation_type,
        original=f'{bounds.width:g}x{bounds.height:g}',
        expanded=f'{prediction.canvas_bounds.width:g}x{prediction.canvas_bounds.height:g}',
        expansions=prediction.expansions.to_dict(),
        ratios=prediction.metadata['ratiosUsed'],
    )
    return prediction.canvas_bounds, prediction.outpaint_bounds


def available_operations() -> Dict[str, Dict[str, Any]]:
    result: Dict[str, Dict[str, Any]] = {}
    for key, operation in OUTPAINT_MODES.items():
        directions = ' and '.join(operation['directions']).lower()
        result[key] = {
            'directions': list(operation['directions']),
            'defaultIntensity': operation['intensity'],
            'description': f"Expand {directions} with {operation['intensity'].lower()} intensity",
        }
    return result


def expansion_info() -> Dict[str, Any]:
    return {
        'expansionRatios': EXPANSION_RATIOS,
        'operationModes': OUTPAINT_MODES,
        'availableIntensities': list(INTENSITIES),
    }


def expansion_percentages(original: ImageBounds, expansions: OutpaintBounds) -> Dict[str, float]:
    if not original.has_size():
        raise ValueError('bounds_size_required')
    width = (expansions.left + expansions.right) / original.width * 100
    height = (expansions.top + expansions.bottom) / original.height * 100
    return {
        'width': float(_round_half_up(width, 2)),
        'height': float(_round_half_up(height, 2)),
    }


def outpaint_pixels(canvas: ImageBounds, original: ImageBounds) -> OutpaintBounds:
    return OutpaintBounds(
        top=int(_round_half_up(max(0.0, original.y - canvas.y))),
        bottom=int(_round_half_up(max(0.0, canvas.bottom - original.bottom))),
        left=int(_round_half_up(max(0.0, original.x - canvas.x))),
        right=int(_round_half_up(max(0.0, canvas.right - original.right))),
    )


def extended_areas(canvas: ImageBounds, original: ImageBounds) -> List[Dict[str, Any]]:
    pixels = outpaint_pixels(canvas, original)
    areas: List[Dict[str, Any]] = []
    if pixels.top:
        areas.append({'side': 'top', 'x': canvas.x, 'y': canvas.y, 'width': canvas.width, 'height': pixels.top})
    if pixels.bottom:
        areas.append(
            {'side': 'bottom', 'x': canvas.x, 'y': original.bottom, 'width': canvas.width, 'height': pixels.bottom}
        )
    if pixels.left:
        areas.append(
            {'side': 'left', 'x': canvas.x, 'y': original.y, 'width': pixels.left, 'height': original.height}
        )
    if pixels.right:
        areas.append(
            {'side': 'right', 'x': original.right, 'y': original.y, 'width': pixels.right, 'height': original.height}
        )
    return areas
