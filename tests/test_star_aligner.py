import numpy as np
import pytest

from photalign.alignment.star_aligner import StarAligner
from photalign.exceptions import FrameError, InsufficientFeaturesError, ReferenceFrameError
from conftest import render_frame


def test_reference_frame_passes_through_unchanged(sequence, config):
    result = StarAligner(config).align_sequence(sequence)

    assert result.frames[0] is sequence[0]
    assert result.registrations[0].transform.is_identity()


def test_self_alignment_leaves_pixels_unchanged(make_record, config):
    reference = make_record()

    registration = StarAligner(config).register(reference, reference)

    finite = np.isfinite(registration.image.data)
    assert finite.mean() > 0.95
    assert np.allclose(registration.image.data[finite], reference.data[finite], rtol=1e-6, atol=1e-3)


def test_sequence_order_and_timestamps_preserved(sequence, config):
    result = StarAligner(config).align_sequence(sequence)

    assert len(result.frames) == len(sequence)
    assert [frame.timestamp for frame in result.frames] == [frame.timestamp for frame in sequence]
    assert result.errors == []


def test_order_preserved_with_thread_pool(sequence, make_config):
    result = StarAligner(make_config(max_workers=3)).align_sequence(sequence)

    assert [frame.timestamp for frame in result.frames] == [frame.timestamp for frame in sequence]


def test_rotation_recovered_per_frame(sequence, config):
    result = StarAligner(config).align_sequence(sequence)

    rotations = [registration.transform.rotation_deg for registration in result.registrations]
    assert np.allclose(rotations, [0.0, -2.0, -4.0, -6.0, -8.0], atol=0.05)


def test_best_effort_collects_frame_errors(sequence, make_record, config):
    frames = list(sequence)
    frames[2] = make_record(index=2, data=render_frame([], seed=2))

    result = StarAligner(config).align_sequence(frames)

    assert result.frames[2] is None
    assert all(frame is not None for i, frame in enumerate(result.frames) if i != 2)
    assert [error.frame_index for error in result.errors] == [2]
    assert isinstance(result.errors[0].cause, InsufficientFeaturesError)
    assert result.errors[0].timestamp == frames[2].timestamp


def test_fail_fast_raises_frame_error(sequence, make_record, make_config):
    frames = list(sequence)
    frames[3] = make_record(index=3, data=render_frame([], seed=3))

    with pytest.raises(FrameError) as exc_info:
        StarAligner(make_config(failure_policy='fail_fast')).align_sequence(frames)

    assert exc_info.value.frame_index == 3
    assert isinstance(exc_info.value.cause, InsufficientFeaturesError)


def test_unusable_reference_is_fatal_even_in_best_effort(sequence, make_record, config):
    frames = [make_record(index=0, data=render_frame([], seed=0))] + list(sequence[1:])

    with pytest.raises(ReferenceFrameError):
        StarAligner(config).align_sequence(frames)


def test_empty_sequence(config):
    result = StarAligner(config).align_sequence([])

    assert result.frames == []
    assert result.errors == []
