"""Power-of-two rescaling of score vectors.

Inside and outside scores are products of many probabilities and underflow
double precision on long sentences. Each score vector therefore carries an
integer exponent: the true value is ``raw * SCALE ** exponent`` with
``SCALE = 2 ** SCALE_EXPONENT``. Rescaling multiplies by exact powers of
two, so it never loses precision.
"""

import math

SCALE_EXPONENT = 256
SCALE = math.ldexp(1.0, SCALE_EXPONENT)
INVERSE_SCALE = math.ldexp(1.0, -SCALE_EXPONENT)
LOG_SCALE = SCALE_EXPONENT * math.log(2)

# Beyond this many binary orders of magnitude ldexp would overflow.
_MAX_BITS = 1100


def scaling_factor(exponent):
    """Return SCALE ** exponent, saturating to 0.0 or inf instead of raising."""
    bits = SCALE_EXPONENT * exponent
    if bits > _MAX_BITS:
        return math.inf
    if bits < -_MAX_BITS:
        return 0.0
    return math.ldexp(1.0, bits)


def scale_array(scores, previous_scale, max_score=None):
    """Rescale scores in place so its maximum lies within [1/SCALE, SCALE].

    Args:
        scores: 1-d numpy array, modified in place.
        previous_scale: exponent the vector carried before rescaling.
        max_score: precomputed maximum, if the caller has it.

    Returns:
        The new exponent. All-zero vectors keep previous_scale.
    """
    if max_score is None:
        max_score = scores.max() if len(scores) > 0 else 0.0
    if max_score == 0 or INVERSE_SCALE <= max_score <= SCALE:
        return previous_scale
    if math.isinf(max_score) or math.isnan(max_score):
        return 0
    # One step at a time; a combined multiplier can overflow for denormals.
    steps = 0
    while max_score > SCALE:
        max_score *= INVERSE_SCALE
        scores *= INVERSE_SCALE
        steps += 1
    while max_score < INVERSE_SCALE:
        max_score *= SCALE
        scores *= SCALE
        steps -= 1
    return previous_scale + steps


def log_scale(exponent):
    return exponent * LOG_SCALE


def log_score(value, exponent):
    """True natural log of a scaled value. log(0) is -inf."""
    if value <= 0:
        return -math.inf
    return math.log(value) + log_scale(exponent)


def unscale(value, exponent):
    if exponent == 0:
        return value
    return value * scaling_factor(exponent)


def calc_scale(scales):
    """Combined exponent of a product of scaled quantities."""
    return sum(scales)
