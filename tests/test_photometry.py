import numpy as np
import pytest
from astropy.time import Time

from photalign.exceptions import OutOfBoundsWarning
from photalign.image_record import ImageRecord
from photalign.photometry.apertures import Aperture, FluxSample, measure_frame, measure_sequence


def _record(data):
    return ImageRecord.from_array(data, "2024-03-01T00:00:00")


def test_aperture_radius_must_be_positive():
    with pytest.raises(ValueError):
        Aperture('bad', 10.0, 10.0, 0.0)


def test_exact_overlap_on_uniform_image_equals_area():
    sample = measure_frame(_record(np.full((40, 40), 2.0)), [Aperture('a', 19.3, 20.6, 7.5)])

    assert sample.fluxes['a'] == pytest.approx(2.0 * np.pi * 7.5 ** 2, rel=1e-9)
    assert sample.warnings == ()


def test_exact_flux_between_center_and_touching_sums():
    data = np.full((40, 40), 2.5)
    x0, y0, radius = 20.0, 20.0, 4.0
    y, x = np.mgrid[0:40, 0:40]
    # Pixel (x, y) covers [x - 0.5, x + 0.5] x [y - 0.5, y + 0.5]
    centre_inside = np.hypot(x - x0, y - y0) <= radius
    nearest_dx = np.clip(np.abs(x - x0) - 0.5, 0, None)
    nearest_dy = np.clip(np.abs(y - y0) - 0.5, 0, None)
    touching = np.hypot(nearest_dx, nearest_dy) < radius

    flux = measure_frame(_record(data), [Aperture('a', x0, y0, radius)]).fluxes['a']

    assert data[centre_inside].sum() <= flux <= data[touching].sum()


def test_flux_increases_with_radius(make_record, star_positions):
    record = make_record()
    x, y = star_positions[0]
    radii = [1.0, 2.0, 3.0, 5.0, 8.0]

    sample = measure_frame(record, [Aperture(f"r{r}", x, y, r) for r in radii])

    fluxes = [sample.fluxes[f"r{r}"] for r in radii]
    assert np.all(np.diff(fluxes) > 0)


def test_star_flux_recovered(make_record, star_positions):
    x, y = star_positions[1]

    flux = measure_frame(make_record(), [Aperture('b', x, y, 6.0)]).fluxes['b']

    expected = 2 * np.pi * 1.5 ** 2 * 1000.0 + np.pi * 36.0 * 10.0
    assert flux == pytest.approx(expected, rel=0.01)


def test_edge_aperture_sums_in_bounds_and_warns(make_record):
    record = make_record()

    sample = measure_frame(record, [Aperture('edge', 2.0, 50.0, 5.0)], frame_index=7)

    assert np.isfinite(sample.fluxes['edge'])
    assert 0 < sample.fluxes['edge'] < 10.5 * np.pi * 25.0
    assert len(sample.warnings) == 1
    warning = sample.warnings[0]
    assert isinstance(warning, OutOfBoundsWarning)
    assert warning.aperture_name == 'edge'
    assert warning.frame_index == 7
    assert 0 < warning.coverage < 1


def test_aperture_entirely_off_grid():
    sample = measure_frame(_record(np.ones((20, 20))), [Aperture('gone', 100.0, 100.0, 3.0)])

    assert sample.fluxes['gone'] == 0.0
    assert sample.warnings[0].coverage == 0.0


def test_nan_fill_is_excluded_and_flagged():
    data = np.ones((40, 40))
    data[:, :20] = np.nan

    sample = measure_frame(_record(data), [Aperture('half', 20.0, 20.0, 5.0)])

    # Valid pixels start at x = 19.5: the circle minus the segment beyond 0.5 px left of centre
    r, d = 5.0, 0.5
    segment = r ** 2 * np.arccos(d / r) - d * np.sqrt(r ** 2 - d ** 2)
    assert sample.fluxes['half'] == pytest.approx(np.pi * r ** 2 - segment, rel=1e-6)
    assert len(sample.warnings) == 1
    assert sample.warnings[0].coverage == pytest.approx((np.pi * r ** 2 - segment) / (np.pi * r ** 2), rel=1e-6)


def test_measure_sequence_fills_missing_frames(make_record, apertures):
    frames = [make_record(index=0), None, make_record(index=2)]
    times = [Time("2024-03-01T00:00:00"), Time("2024-03-01T00:00:10"), Time("2024-03-01T00:00:20")]

    samples, errors = measure_sequence(frames, apertures, timestamps=times)

    assert errors == []
    assert [sample.frame_index for sample in samples] == [0, 1, 2]
    assert samples[1].failed
    assert samples[1].timestamp == times[1]
    assert not samples[0].failed


def test_measure_sequence_requires_timestamps_for_missing_frames(apertures):
    with pytest.raises(ValueError):
        measure_sequence([None], apertures)


def test_missing_sample_has_nan_for_every_aperture(apertures):
    sample = FluxSample.missing(3, Time("2024-03-01T00:00:30"), apertures)

    assert set(sample.fluxes) == {'a', 'b', 'c'}
    assert all(np.isnan(value) for value in sample.fluxes.values())


def test_sample_without_apertures_is_not_failed():
    sample = FluxSample(frame_index=0, timestamp=Time("2024-03-01T00:00:00"), fluxes={})

    assert not sample.failed
