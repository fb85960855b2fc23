from .apertures import Aperture, FluxSample, measure_frame, measure_sequence
from .light_curve import (
    flux_table,
    normalize_by_median,
    divided_light_curve,
    event_duration,
    orbital_speed,
    estimate_occulter_diameter,
)
