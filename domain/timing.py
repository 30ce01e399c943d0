"""Pure time-model functions: range interpolation, easing curves and springs."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Callable, Sequence

from domain.composition import RenderValidationError

INVALID_RANGE_CODE = "render_composition.input.invalid_range"
INVALID_SPRING_CODE = "render_composition.input.invalid_spring"
INVALID_EXTRAPOLATION_CODE = "render_composition.input.invalid_extrapolation"

EXTRAPOLATE_EXTEND = "extend"
EXTRAPOLATE_CLAMP = "clamp"
EXTRAPOLATE_IDENTITY = "identity"
EXTRAPOLATION_MODES = (EXTRAPOLATE_EXTEND, EXTRAPOLATE_CLAMP, EXTRAPOLATE_IDENTITY)

BEZIER_NEWTON_ITERATIONS = 8
BEZIER_SUBDIVISION_ITERATIONS = 30
BEZIER_PRECISION = 1e-7

EasingFunction = Callable[[float], float]


def _validate_ranges(input_range: Sequence[float], output_range: Sequence[float]) -> None:
    if len(input_range) < 2:
        raise RenderValidationError(
            INVALID_RANGE_CODE, "input range must contain at least two values"
        )
    if len(input_range) != len(output_range):
        raise RenderValidationError(
            INVALID_RANGE_CODE,
            f"input range ({len(input_range)}) and output range "
            f"({len(output_range)}) must have the same length",
        )
    for index in range(1, len(input_range)):
        if not input_range[index] > input_range[index - 1]:
            raise RenderValidationError(
                INVALID_RANGE_CODE,
                f"input range must be strictly increasing: {list(input_range)}",
            )
    for value in list(input_range) + list(output_range):
        if not math.isfinite(value):
            raise RenderValidationError(
                INVALID_RANGE_CODE, "ranges must contain finite numbers"
            )


def _validate_extrapolation(mode: str) -> None:
    if mode not in EXTRAPOLATION_MODES:
        raise RenderValidationError(
            INVALID_EXTRAPOLATION_CODE, f"unsupported extrapolation: {mode!r}"
        )


def _find_segment(value: float, input_range: Sequence[float]) -> int:
    """Return the index of the segment containing value (edge segments outside)."""
    last_segment = len(input_range) - 2
    for index in range(last_segment + 1):
        if value <= input_range[index + 1]:
            return index
    return last_segment


def _interpolate_segment(
    value: float,
    input_min: float,
    input_max: float,
    output_min: float,
    output_max: float,
    extrapolate_left: str,
    extrapolate_right: str,
    easing: EasingFunction | None,
) -> float:
    if value < input_min:
        if extrapolate_left == EXTRAPOLATE_IDENTITY:
            return value
        if extrapolate_left == EXTRAPOLATE_CLAMP:
            return output_min
    if value > input_max:
        if extrapolate_right == EXTRAPOLATE_IDENTITY:
            return value
        if extrapolate_right == EXTRAPOLATE_CLAMP:
            return output_max

    if value == input_min:
        return output_min
    if value == input_max:
        return output_max
    if output_min == output_max:
        return output_min

    progress = (value - input_min) / (input_max - input_min)
    if easing is not None and 0.0 <= progress <= 1.0:
        progress = easing(progress)
    return output_min + progress * (output_max - output_min)


def interpolate(
    value: float,
    input_range: Sequence[float],
    output_range: Sequence[float],
    extrapolate_left: str = EXTRAPOLATE_EXTEND,
    extrapolate_right: str = EXTRAPOLATE_EXTEND,
    easing: EasingFunction | None = None,
) -> float:
    """Map value from input_range onto output_range, segment by segment.

    Outside the input range the nearest segment's slope is extended by
    default; "clamp" pins to the boundary output and "identity" returns the
    input unchanged. Easing only shapes progress inside a segment.
    """
    _validate_ranges(input_range, output_range)
    _validate_extrapolation(extrapolate_left)
    _validate_extrapolation(extrapolate_right)

    segment = _find_segment(value, input_range)
    return _interpolate_segment(
        value,
        input_range[segment],
        input_range[segment + 1],
        output_range[segment],
        output_range[segment + 1],
        extrapolate_left,
        extrapolate_right,
        easing,
    )


def _bezier_coefficients(p1: float, p2: float) -> tuple[float, float, float]:
    c = 3.0 * p1
    b = 3.0 * (p2 - p1) - c
    a = 1.0 - c - b
    return a, b, c


def bezier(x1: float, y1: float, x2: float, y2: float) -> EasingFunction:
    """Build a CSS-style cubic-bezier easing curve."""
    if not (0.0 <= x1 <= 1.0 and 0.0 <= x2 <= 1.0):
        raise RenderValidationError(
            INVALID_RANGE_CODE, "bezier x values must be within 0..1"
        )
    ax, bx, cx = _bezier_coefficients(x1, x2)
    ay, by, cy = _bezier_coefficients(y1, y2)

    def sample_x(t: float) -> float:
        return ((ax * t + bx) * t + cx) * t

    def sample_y(t: float) -> float:
        return ((ay * t + by) * t + cy) * t

    def sample_dx(t: float) -> float:
        return (3.0 * ax * t + 2.0 * bx) * t + cx

    def solve_t(x_value: float) -> float:
        t = x_value
        for _ in range(BEZIER_NEWTON_ITERATIONS):
            error = sample_x(t) - x_value
            if abs(error) < BEZIER_PRECISION:
                return t
            slope = sample_dx(t)
            if abs(slope) < 1e-6:
                break
            t -= error / slope

        lower, upper = 0.0, 1.0
        t = x_value
        for _ in range(BEZIER_SUBDIVISION_ITERATIONS):
            current = sample_x(t)
            if abs(current - x_value) < BEZIER_PRECISION:
                return t
            if current < x_value:
                lower = t
            else:
                upper = t
            t = (lower + upper) / 2.0
        return t

    def curve(progress: float) -> float:
        if progress <= 0.0:
            return 0.0
        if progress >= 1.0:
            return 1.0
        if x1 == y1 and x2 == y2:
            return progress
        return sample_y(solve_t(progress))

    return curve


class Easing:
    """Named easing curves and combinators."""

    @staticmethod
    def linear(progress: float) -> float:
        return progress

    @staticmethod
    def quad(progress: float) -> float:
        return progress * progress

    @staticmethod
    def cubic(progress: float) -> float:
        return progress * progress * progress

    @staticmethod
    def sin(progress: float) -> float:
        return 1.0 - math.cos(progress * math.pi / 2.0)

    ease = staticmethod(bezier(0.25, 0.1, 0.25, 1.0))
    in_ = staticmethod(bezier(0.42, 0.0, 1.0, 1.0))
    out = staticmethod(bezier(0.0, 0.0, 0.58, 1.0))
    in_out = staticmethod(bezier(0.42, 0.0, 0.58, 1.0))
    bezier = staticmethod(bezier)

    @staticmethod
    def make_in(curve: EasingFunction) -> EasingFunction:
        return curve

    @staticmethod
    def make_out(curve: EasingFunction) -> EasingFunction:
        def eased(progress: float) -> float:
            return 1.0 - curve(1.0 - progress)

        return eased

    @staticmethod
    def make_in_out(curve: EasingFunction) -> EasingFunction:
        def eased(progress: float) -> float:
            if progress < 0.5:
                return curve(progress * 2.0) / 2.0
            return 1.0 - curve((1.0 - progress) * 2.0) / 2.0

        return eased


@dataclass(frozen=True)
class SpringConfig:
    """Physical parameters of a damped harmonic oscillator."""

    stiffness: float = 100.0
    damping: float = 10.0
    mass: float = 1.0

    def __post_init__(self) -> None:
        if self.stiffness <= 0:
            raise RenderValidationError(
                INVALID_SPRING_CODE, "spring stiffness must be positive"
            )
        if self.mass <= 0:
            raise RenderValidationError(INVALID_SPRING_CODE, "spring mass must be positive")
        if self.damping < 0:
            raise RenderValidationError(
                INVALID_SPRING_CODE, "spring damping must be non-negative"
            )

    @property
    def damping_ratio(self) -> float:
        return self.damping / (2.0 * math.sqrt(self.stiffness * self.mass))

    @property
    def natural_frequency(self) -> float:
        return math.sqrt(self.stiffness / self.mass)


DEFAULT_SPRING_CONFIG = SpringConfig()


def spring(frame: float, fps: float, config: SpringConfig = DEFAULT_SPRING_CONFIG) -> float:
    """Closed-form spring position from rest (0) towards 1 at frame/fps seconds.

    Frames at or before 0 return 0; the closed form is never evaluated
    backwards in time.
    """
    if fps <= 0:
        raise RenderValidationError(INVALID_SPRING_CODE, "fps must be positive")
    t = frame / fps
    if t <= 0:
        return 0.0
    zeta = config.damping_ratio
    omega0 = config.natural_frequency

    if zeta < 1:
        omega_d = omega0 * math.sqrt(1 - zeta * zeta)
        envelope = math.exp(-zeta * omega0 * t)
        return 1 - envelope * (
            math.cos(omega_d * t) + (zeta * omega0 / omega_d) * math.sin(omega_d * t)
        )
    return 1 - math.exp(-omega0 * t) * (1 + omega0 * t)
