"""
Light-curve assembly and the physical quantities derived from it.

The divided light curve (target flux / comparison flux) cancels
transparency changes common to both stars. An occultation shows up as a dip
in the ratio; its duration and the occulter's orbital speed give a chord
length, i.e. a lower bound on the occulter's diameter.
"""
from typing import Iterable, Optional, Sequence

import numpy as np
from astropy import constants as const
from astropy import units as u
from astropy.table import Table
from astropy.time import Time

from photalign.logger.backend_logger import backend_logger
from photalign.photometry.apertures import Aperture, FluxSample


def _sample_times(samples: Sequence[FluxSample]) -> Time:
    if not samples:
        return Time([], format='jd', scale='utc')
    return Time([sample.timestamp for sample in samples])


def _median_normalized(values: np.ndarray) -> np.ndarray:
    values = np.asarray(values, dtype=np.float64)
    finite = values[np.isfinite(values)]
    if finite.size == 0:
        return values.copy()
    median = np.median(finite)
    if median == 0:
        backend_logger.warning("Median is zero; values left unnormalised.")
        return values.copy()
    return values / median


def flux_table(samples: Sequence[FluxSample], apertures: Sequence[Aperture]) -> Table:
    """
    Tabulates flux samples: one row per frame.

    Columns are `t` (astropy Time), one float column per aperture name and a
    boolean `out_of_bounds` that is True if any aperture was clipped on that frame.
    """
    columns = {'t': _sample_times(samples)}
    for aperture in apertures:
        columns[aperture.name] = np.array([sample.fluxes.get(aperture.name, np.nan) for sample in samples],
                                          dtype=np.float64)
    columns['out_of_bounds'] = np.array([bool(sample.warnings) for sample in samples], dtype=bool)
    return Table(columns)


def normalize_by_median(table: Table, columns: Optional[Iterable[str]] = None) -> Table:
    """
    Returns a copy of `table` with each listed column divided by its median.

    Args:
        table (Table): Output of `flux_table` or `divided_light_curve`.
        columns (Iterable[str]): Columns to normalise. Defaults to every float column.

    Returns:
        Table: New table. Columns whose finite values have a zero median, or
               that hold no finite value, are copied unchanged.
    """
    normalized = table.copy()
    if columns is None:
        columns = [name for name in table.colnames
                   if not isinstance(table[name], Time) and table[name].dtype.kind == 'f']
    for name in columns:
        normalized[name] = _median_normalized(table[name])
    return normalized


def divided_light_curve(samples: Sequence[FluxSample], apertures: Sequence[Aperture], target: str,
                        comparison: str) -> Table:
    """
    Builds the target / comparison flux ratio for every sample.

    Args:
        samples (Sequence[FluxSample]): Samples in frame order.
        apertures (Sequence[Aperture]): The measured apertures.
        target (str): Target aperture name.
        comparison (str): Comparison aperture name.

    Returns:
        Table: Columns `t` and `ratio`. The ratio is NaN where the comparison
               flux is zero or NaN.

    Raises:
        KeyError: target or comparison is not one of the aperture names.
    """
    names = [aperture.name for aperture in apertures]
    for name in (target, comparison):
        if name not in names:
            raise KeyError(f"No aperture named '{name}' (have {names})")

    target_flux = np.array([sample.fluxes[target] for sample in samples], dtype=np.float64)
    comparison_flux = np.array([sample.fluxes[comparison] for sample in samples], dtype=np.float64)

    defined = np.isfinite(comparison_flux) & (comparison_flux != 0)
    ratio = np.full(len(samples), np.nan)
    ratio[defined] = target_flux[defined] / comparison_flux[defined]

    n_undefined = int(np.count_nonzero(~defined))
    if n_undefined:
        backend_logger.warning(f"{n_undefined}/{len(ratio)} light-curve points undefined (comparison flux zero or NaN).")

    return Table({'t': _sample_times(samples), 'ratio': ratio}, meta={'target': target, 'comparison': comparison})


def event_duration(times: Time, ratios: np.ndarray, depth: float = 0.5) -> float:
    """
    Duration of the longest run of points whose median-normalised ratio falls below `depth`.

    The run is measured from the midpoint before its first point to the
    midpoint after its last point, so a single-frame dip lasts about one cadence.

    Args:
        times (Time): Sample times, increasing.
        ratios (np.ndarray): Light-curve values.
        depth (float): Threshold as a fraction of the median level.

    Returns:
        float: Duration in seconds. 0.0 when no point dips below the threshold.
    """
    normalized = _median_normalized(ratios)
    below = np.isfinite(normalized) & (normalized < depth)
    if not below.any():
        return 0.0

    seconds = (times - times[0]).to_value(u.s)

    # Longest run of consecutive True values, as [start, end)
    best_start, best_end, start = 0, 0, None
    for i, flag in enumerate(np.append(below, False)):
        if flag and start is None:
            start = i
        elif not flag and start is not None:
            if i - start > best_end - best_start:
                best_start, best_end = start, i
            start = None

    first, last = best_start, best_end - 1
    begin = (seconds[first - 1] + seconds[first]) / 2 if first > 0 else seconds[first]
    end = (seconds[last] + seconds[last + 1]) / 2 if last + 1 < len(seconds) else seconds[last]
    duration = float(end - begin)
    backend_logger.debug(f"Dip of {best_end - best_start} points below {depth:.2f}: {duration:.3f} s")
    return duration


def orbital_speed(distance_au: float) -> float:
    """Circular heliocentric orbital speed, sqrt(GM_sun / r), in km/s."""
    if not distance_au > 0:
        raise ValueError(f"Heliocentric distance must be positive, got {distance_au}")
    speed = np.sqrt(const.GM_sun / (distance_au * u.au))
    return float(speed.to_value(u.km / u.s))


def estimate_occulter_diameter(duration_s: float, distance_au: float) -> float:
    """
    Chord length swept by an occulter on a circular orbit during the event, in km.

    Ignores Earth's own motion, so this is an order-of-magnitude estimate.
    """
    if duration_s < 0:
        raise ValueError(f"Duration must be non-negative, got {duration_s}")
    return orbital_speed(distance_au) * duration_s
