"""Shared pytest fixtures: synthetic star fields rendered on a noisy background.

Frames are 100x100 with five Gaussian stars. A frame with index i is the
reference field rotated by `angle_deg` about the frame centre and shifted,
with its own noise realisation and a DATE-OBS `i * CADENCE_S` seconds after
START_TIME.
"""
import numpy as np
import pytest
from astropy.io import fits
from astropy.time import Time, TimeDelta

from photalign.config import PipelineConfig
from photalign.image_record import ImageRecord
from photalign.photometry.apertures import Aperture


FRAME_SHAPE = (100, 100)
CENTRE = np.array([50.0, 50.0])
STAR_POSITIONS = np.array([(30.0, 25.0), (70.0, 35.0), (45.0, 72.0), (62.0, 60.0), (22.0, 58.0)])
STAR_AMPLITUDES = np.array([1200.0, 1000.0, 900.0, 800.0, 700.0])
STAR_SIGMA = 1.5
BACKGROUND = 10.0
START_TIME = Time("2024-03-01T00:00:00", scale='utc')
CADENCE_S = 10.0


def transformed_positions(angle_deg=0.0, shift=(0.0, 0.0)):
    theta = np.radians(angle_deg)
    rotation = np.array([[np.cos(theta), -np.sin(theta)],
                         [np.sin(theta), np.cos(theta)]])
    return (STAR_POSITIONS - CENTRE) @ rotation.T + CENTRE + np.asarray(shift)


def render_frame(positions, seed=0, noise=1.0, amplitudes=STAR_AMPLITUDES, shape=FRAME_SHAPE):
    rng = np.random.default_rng(seed)
    y, x = np.mgrid[0:shape[0], 0:shape[1]]
    image = BACKGROUND + rng.normal(0.0, noise, shape)
    for (x0, y0), amplitude in zip(positions, amplitudes):
        image += amplitude * np.exp(-((x - x0) ** 2 + (y - y0) ** 2) / (2 * STAR_SIGMA ** 2))
    return image


def frame_time(index):
    return START_TIME + TimeDelta(index * CADENCE_S, format='sec')


# =============================================================================
# Frame Fixtures
# =============================================================================

@pytest.fixture
def star_positions():
    """Star (x, y) positions on the reference frame."""
    return STAR_POSITIONS.copy()


@pytest.fixture
def make_record():
    """Factory for synthetic frames.

    Examples
    --------
    >>> def test_something(make_record):
    ...     record = make_record(index=2, angle_deg=4.0)
    """
    def _make(index=0, angle_deg=0.0, shift=(0.0, 0.0), data=None, **header_cards):
        if data is None:
            data = render_frame(transformed_positions(angle_deg, shift), seed=index)
        cards = {'EXPTIME': 5.0, 'INSTRUME': 'SIM', **header_cards}
        return ImageRecord.from_array(data, frame_time(index), **cards)

    return _make


@pytest.fixture
def sequence(make_record):
    """Five frames, each rotated 2 degrees and shifted half a pixel more than the last."""
    return [make_record(index=i, angle_deg=2.0 * i, shift=(0.5 * i, -0.3 * i)) for i in range(5)]


@pytest.fixture
def fits_dir(tmp_path):
    """A directory of FITS frames whose file names run opposite to their DATE-OBS order."""
    for i in range(3):
        header = fits.Header()
        header['DATE-OBS'] = frame_time(i).isot
        header['EXPTIME'] = 5.0
        data = render_frame(transformed_positions(1.0 * i), seed=i).astype(np.float32)
        fits.PrimaryHDU(data=data, header=header).writeto(tmp_path / f"frame_{2 - i}.fits")
    return tmp_path


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def apertures():
    """Apertures on the three brightest stars, 4 sigma in radius."""
    return (
        Aperture('a', *STAR_POSITIONS[0], radius=6.0),
        Aperture('b', *STAR_POSITIONS[1], radius=6.0),
        Aperture('c', *STAR_POSITIONS[2], radius=6.0),
    )


@pytest.fixture
def make_config(apertures):
    """Factory for PipelineConfig with test-friendly defaults and overrides."""
    def _make(**overrides):
        settings = dict(
            threshold_sigma=6.0,
            max_sources=10,
            apertures=apertures,
            target='a',
            comparison='b',
        )
        settings.update(overrides)
        return PipelineConfig(**settings)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()
