import numpy as np
import pytest

from qmethod.core.analysis import perform_analysis
from qmethod.core.pqmethod import (
    export_dat,
    export_lis,
    export_sta,
    import_dat,
    import_lis,
    import_sta,
    is_listing,
    validate_against_reference,
)
from qmethod.core.types import ExtractionOptions, QSortMatrix
from qmethod.errors import InputError, PQMethodFormatError

from conftest import random_ranks


# ── DAT ──

def test_dat_layout(planted, grid):
    lines = export_dat(planted, grid, "Planted").decode("latin-1").split("\r\n")
    assert lines[0] == "  0 15 20Planted"
    assert lines[1] == " -3  3  2  2  3  6  3  2  2"
    assert lines[2].startswith("P01       ")
    assert len(lines[2]) == 10 + 2 * 20
    assert lines[2][10:12] == f"{planted.ranks[0, 0]:2d}"


def test_dat_round_trip(planted, grid):
    study = import_dat(export_dat(planted, grid, "Planted"))
    assert study.title == "Planted"
    assert study.grid == grid
    assert study.qsorts.participant_ids == planted.participant_ids
    np.testing.assert_array_equal(study.qsorts.ranks, planted.ranks)


def test_dat_accepts_text_and_lf_endings(planted, grid):
    text = export_dat(planted, grid).decode("latin-1").replace("\r\n", "\n")
    study = import_dat(text)
    np.testing.assert_array_equal(study.qsorts.ranks, planted.ranks)


def test_dat_bad_header_field(planted, grid):
    lines = export_dat(planted, grid).decode("latin-1").split("\r\n")
    lines[0] = "  0 x5 20"
    with pytest.raises(PQMethodFormatError) as exc_info:
        import_dat("\r\n".join(lines).encode("latin-1"))
    assert exc_info.value.line == 1
    assert exc_info.value.field == "sorts"


def test_dat_bad_rank_reports_line_and_statement(planted, grid):
    lines = export_dat(planted, grid).decode("latin-1").split("\r\n")
    lines[3] = lines[3][:12] + "ab" + lines[3][14:]
    with pytest.raises(PQMethodFormatError) as exc_info:
        import_dat("\r\n".join(lines).encode("latin-1"))
    assert exc_info.value.line == 4
    assert exc_info.value.field == "statement[2]"
    assert isinstance(exc_info.value, InputError)


def test_dat_sort_count_mismatch(planted, grid):
    lines = export_dat(planted, grid).decode("latin-1").split("\r\n")
    with pytest.raises(PQMethodFormatError) as exc_info:
        import_dat("\r\n".join(lines[:-3]).encode("latin-1"))
    assert exc_info.value.field == "sorts"


def test_dat_grid_must_match_statement_count(planted, grid):
    lines = export_dat(planted, grid).decode("latin-1").split("\r\n")
    lines[1] = " -3  3  2  2  3  5  3  2  2"
    with pytest.raises(PQMethodFormatError) as exc_info:
        import_dat("\r\n".join(lines).encode("latin-1"))
    assert exc_info.value.line == 2


# ── STA ──

def test_sta_round_trip():
    texts = ("Café culture matters", "Nothing changes", "Rules are rules")
    data = export_sta(texts)
    assert data.endswith(b"\r\n")
    assert import_sta(data) == texts


def test_sta_rejects_multiline_text():
    with pytest.raises(InputError):
        export_sta(["one\ntwo"])


# ── LIS ──

def test_lis_round_trip(planted_result):
    data = export_lis(planted_result, "Planted")
    assert is_listing(data)
    output = import_lis(data)

    assert output.title == "Planted"
    assert output.extraction_method == "centroid"
    assert output.rotation_method == "varimax"
    assert output.n_factors == 3
    np.testing.assert_allclose(output.z_scores, planted_result.z_score_matrix(), atol=0.001)
    np.testing.assert_array_equal(
        output.ranks, np.column_stack([a.ranks for a in planted_result.arrays])
    )
    np.testing.assert_allclose(output.rotated_loadings, planted_result.rotated.loadings, atol=1e-4)
    np.testing.assert_allclose(output.unrotated.loadings, planted_result.extraction.loadings, atol=1e-4)
    for array in planted_result.arrays:
        flagged = np.flatnonzero(output.defining[:, array.factor - 1])
        assert tuple(flagged) == array.defining_sorts


def test_lis_correlation_matrix_between_sorts(planted_result):
    data = export_lis(planted_result)
    lines = data.decode("latin-1").split("\r\n")
    start = lines.index("Correlation Matrix Between Sorts")
    assert start < lines.index("Unrotated Factor Matrix")
    assert len(lines[start + 2]) == 4 + 7 * 15

    output = import_lis(data)
    np.testing.assert_allclose(output.correlations, planted_result.correlation.values, atol=5e-4)


def test_lis_without_correlation_section_still_parses(planted_result):
    lines = export_lis(planted_result).decode("latin-1").split("\r\n")
    start = lines.index("Correlation Matrix Between Sorts")
    end = lines.index("", start)
    output = import_lis("\r\n".join(lines[:start] + lines[end + 1:]).encode("latin-1"))
    assert output.correlations is None
    assert output.n_factors == 3


def test_lis_truncated_correlation_row(planted_result):
    lines = export_lis(planted_result).decode("latin-1").split("\r\n")
    index = lines.index("Correlation Matrix Between Sorts") + 3
    lines[index] = lines[index][:-7]
    with pytest.raises(PQMethodFormatError) as exc_info:
        import_lis("\r\n".join(lines).encode("latin-1"))
    assert exc_info.value.line == index + 1
    assert exc_info.value.field == "Correlation Matrix Between Sorts"


def test_lis_factor_array_row_layout(planted_result):
    lines = export_lis(planted_result).decode("latin-1").split("\r\n")
    start = lines.index("Factor Arrays") + 2
    row = lines[start]
    assert row[:4] == "   1"
    assert len(row) == 4 + 12 * 3
    assert float(row[4:12]) == pytest.approx(planted_result.arrays[0].z_scores[0], abs=5e-4)
    assert int(row[12:16]) == planted_result.arrays[0].ranks[0]


def test_lis_missing_section():
    with pytest.raises(PQMethodFormatError) as exc_info:
        import_lis(b"Title: nothing\r\n")
    assert exc_info.value.field == "Unrotated Factor Matrix"


def test_lis_bad_value_reports_line(planted_result):
    lines = export_lis(planted_result).decode("latin-1").split("\r\n")
    index = lines.index("Factor Arrays") + 2
    lines[index] = lines[index][:4] + "  bogus " + lines[index][12:]
    with pytest.raises(PQMethodFormatError) as exc_info:
        import_lis("\r\n".join(lines).encode("latin-1"))
    assert exc_info.value.line == index + 1
    assert exc_info.value.field == "z[F1]"


def test_dat_is_not_a_listing(planted, grid):
    assert not is_listing(export_dat(planted, grid))


# ── Validation ──

def test_validation_against_own_listing_passes(planted_result):
    report = validate_against_reference(planted_result, export_lis(planted_result))
    assert report.passed
    assert report.correlation >= 0.999
    assert report.deltas == ()
    assert report.failing_factors() == []


def test_validation_against_other_study_fails_without_raising(planted_result, config):
    other = perform_analysis(QSortMatrix(ranks=random_ranks(15, seed=11)), config)
    report = validate_against_reference(planted_result, export_lis(other))
    assert not report.passed
    assert report.correlation < 0.99
    assert report.deltas
    assert report.failing_factors()


def test_validation_reports_factor_count_mismatch(planted_result, planted, config):
    two = perform_analysis(planted, config.replace(extraction=ExtractionOptions(n_factors=2)))
    report = validate_against_reference(planted_result, export_lis(two))
    assert not report.passed
    assert len(report.per_factor) == 2
    assert any("Factor count" in m for m in report.messages)
