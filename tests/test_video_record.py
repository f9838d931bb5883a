import pytest
from pydantic import ValidationError

from vetrina.api.models.video import (
    SensitivityAnalysis, SensitivityResult, SensitivityStatus, VideoStatus, Visibility,
)
from vetrina.core.errors import InvalidTransitionError


@pytest.mark.parametrize("raw, expected", [(150, 100), (-5, 0), (42, 42), (99.6, 100), (None, 0)])
def test_progress_is_clamped_on_construction(make_record, raw, expected):
    record = make_record(processing_progress=raw)
    assert record.processing_progress == expected


def test_progress_is_clamped_on_assignment(make_record):
    record = make_record()
    record.processing_progress = 150
    assert record.processing_progress == 100
    record.processing_progress = -5
    assert record.processing_progress == 0


def test_update_progress_never_goes_backwards(make_record):
    record = make_record()
    record.update_progress(40)
    record.update_progress(20)
    assert record.processing_progress == 40
    record.update_progress(500)
    assert record.processing_progress == 100


def test_update_progress_is_frozen_after_failure(make_record):
    """Dopo un fallimento il progresso resta all'ultimo traguardo raggiunto."""
    record = make_record()
    record.advance_status(VideoStatus.PROCESSING)
    record.update_progress(20)
    record.mark_failed("transcodifica fallita")
    record.update_progress(60)
    assert record.processing_progress == 20
    assert record.status == VideoStatus.FAILED


def test_file_path_is_immutable(make_record):
    record = make_record()
    with pytest.raises(ValidationError):
        record.file_path = '/altro/percorso.mp4'


def test_optimized_path_is_set_only_once(make_record):
    record = make_record()
    record.set_optimized_path('/opt/a.mp4')
    record.set_optimized_path('/opt/a.mp4') # stesso valore: nessun errore
    with pytest.raises(InvalidTransitionError):
        record.set_optimized_path('/opt/b.mp4')
    assert record.optimized_path == '/opt/a.mp4'


def test_status_moves_forward_only(make_record):
    record = make_record()
    record.advance_status(VideoStatus.PROCESSING)
    record.advance_status(VideoStatus.COMPLETED)
    with pytest.raises(InvalidTransitionError):
        record.advance_status(VideoStatus.PROCESSING)
    with pytest.raises(InvalidTransitionError):
        record.advance_status(VideoStatus.UPLOADING)


def test_failed_is_reachable_from_any_state_but_archived(make_record):
    record = make_record(status=VideoStatus.COMPLETED)
    record.advance_status(VideoStatus.FAILED)
    assert record.status == VideoStatus.FAILED
    with pytest.raises(InvalidTransitionError):
        record.advance_status(VideoStatus.COMPLETED)

    archived = make_record()
    archived.archive()
    with pytest.raises(InvalidTransitionError):
        archived.advance_status(VideoStatus.FAILED)


def test_archive_soft_deletes(make_record):
    record = make_record(status=VideoStatus.PROCESSING)
    record.archive()
    assert record.is_active is False
    assert record.status == VideoStatus.ARCHIVED


def test_tags_are_trimmed_and_deduplicated(make_record):
    record = make_record(tags=[' sport ', 'sport', '', 'news', '  '])
    assert record.tags == ['sport', 'news']


def test_result_and_confidence_are_dropped_unless_completed():
    analysis = SensitivityAnalysis(status=SensitivityStatus.FAILED, result='flagged', confidence=0.5)
    assert analysis.result is None
    assert analysis.confidence is None


def test_completed_analysis_requires_result():
    with pytest.raises(ValidationError):
        SensitivityAnalysis(status=SensitivityStatus.COMPLETED)
    analysis = SensitivityAnalysis.completed(result=SensitivityResult.SAFE, confidence=0.93)
    assert analysis.result == SensitivityResult.SAFE
    assert analysis.analysis_date is not None


def test_mark_failed_records_error_on_sensitivity(make_record):
    record = make_record()
    record.advance_status(VideoStatus.PROCESSING)
    record.begin_sensitivity()
    record.mark_failed("boom")
    assert record.sensitivity.status == SensitivityStatus.FAILED
    assert record.sensitivity.details.error == "boom"
    assert record.sensitivity.result is None


def test_sensitivity_lifecycle(make_record):
    record = make_record()
    record.begin_sensitivity()
    record.apply_sensitivity(SensitivityAnalysis.completed(result='under-review', confidence=0.4))
    with pytest.raises(InvalidTransitionError):
        record.begin_sensitivity()

    record.reopen_sensitivity()
    assert record.sensitivity.status == SensitivityStatus.PROCESSING
    assert record.sensitivity.result is None
    with pytest.raises(InvalidTransitionError):
        record.reopen_sensitivity()


def test_public_dict_hides_storage_paths(make_record):
    record = make_record(visibility=Visibility.PUBLIC)
    data = record.to_public_dict()
    assert 'file_path' not in data
    assert 'optimized_path' not in data
    assert data['is_streamable'] is False
    assert data['visibility'] == 'public'
