import json
import threading
import time

import pytest
from fastapi.testclient import TestClient

from main import app

from conftest import GRID, planted_ranks


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as client:
        yield client


@pytest.fixture
def study():
    return {
        'qsorts': planted_ranks().tolist(),
        'participant_ids': [f"P{i + 1:02d}" for i in range(15)],
        'grid': {'min_rank': GRID.min_rank, 'counts': list(GRID.counts)},
        'extraction': {'method': 'centroid', 'n_factors': 3},
    }


@pytest.fixture
def session_id(client, study):
    response = client.post("/api/sessions", json=study)
    assert response.status_code == 200
    return response.json()['session_id']


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()['status'] == "healthy"


def test_analysis(client, study):
    response = client.post("/api/analysis", json=study)
    assert response.status_code == 200
    body = response.json()
    assert body['summary']['factors'] == 3
    assert len(body['arrays']) == 3
    assert body['factor_correlations'] is None
    assert len(body['arrays'][0]['z_scores']) == 20
    assert body['characteristics'][0]['n_defining'] == 5
    assert body['extraction']['heywood_cases'] == []


def test_invalid_distribution_is_422(client, study):
    study['qsorts'][2][0] = 3 if study['qsorts'][2][0] != 3 else 2
    response = client.post("/api/analysis", json=study)
    assert response.status_code == 422
    assert response.json()['detail']['error'] == "invalid_distribution"
    assert response.json()['detail']['context']['participant'] == 2


@pytest.mark.parametrize("path", ["/api/analysis", "/api/sessions"])
def test_ragged_matrix_is_422(client, study, path):
    study['qsorts'][1] = study['qsorts'][1][:-1]
    response = client.post(path, json=study)
    assert response.status_code == 422
    assert response.json()['detail']['error'] == "input_error"


def test_non_numeric_cell_is_422(client, study):
    study['qsorts'][0][0] = "x"
    response = client.post("/api/analysis", json=study)
    assert response.status_code == 422


def test_session_flow(client, session_id):
    response = client.get(f"/api/sessions/{session_id}")
    assert response.json()['state'] == "extracted"
    assert response.json()['guidance']['kaiser'] == 3

    response = client.post(f"/api/sessions/{session_id}/preview", json={'method': 'varimax'})
    assert response.status_code == 200
    assert response.json()['state'] == "rotation_preview"
    assert response.json()['version'] == 0
    assert client.get(f"/api/sessions/{session_id}").json()['version'] == 0

    response = client.get(f"/api/sessions/{session_id}/results")
    assert response.status_code == 409

    response = client.post(
        f"/api/sessions/{session_id}/apply", json={'method': 'varimax', 'expected_version': 0}
    )
    assert response.status_code == 200
    assert response.json()['state'] == "rotation_confirmed"
    assert response.json()['version'] == 1
    assert len(response.json()['z_scores']) == 3

    response = client.post(
        f"/api/sessions/{session_id}/apply",
        json={'factor_a': 1, 'factor_b': 2, 'angle_degrees': 15, 'expected_version': 0},
    )
    assert response.status_code == 409
    assert response.json()['detail']['error'] == "stale_version"
    assert response.json()['detail']['context']['current'] == 1

    response = client.get(f"/api/sessions/{session_id}/results")
    assert response.status_code == 200
    assert response.json()['rotated']['method'] == "varimax"

    response = client.delete(f"/api/sessions/{session_id}")
    assert response.json() == {'session_id': session_id, 'state': 'closed', 'version': 1}
    assert client.get(f"/api/sessions/{session_id}").status_code == 410


def test_oblique_rotation_rejected_in_orthogonal_session(client, session_id):
    response = client.post(
        f"/api/sessions/{session_id}/apply", json={'method': 'promax', 'expected_version': 0}
    )
    assert response.status_code == 422
    assert response.json()['detail']['error'] == "input_error"


def test_unknown_session_is_404(client):
    assert client.get("/api/sessions/nope").status_code == 404
    assert client.get("/api/bootstrap/nope").status_code == 404


def test_pqmethod_export_import_validate(client, session_id):
    client.post(f"/api/sessions/{session_id}/apply", json={'method': 'varimax', 'expected_version': 0})

    listing = client.post(
        "/api/pqmethod/export", json={'session_id': session_id, 'format': 'lis', 'title': 'Planted'}
    )
    assert listing.status_code == 200
    assert "Factor Arrays" in listing.text

    parsed = client.post("/api/pqmethod/import", json={'content': listing.text})
    assert parsed.json()['kind'] == "lis"
    assert parsed.json()['title'] == "Planted"
    assert len(parsed.json()['correlations']) == 15

    dat = client.post("/api/pqmethod/export", json={'session_id': session_id, 'format': 'dat'})
    parsed = client.post("/api/pqmethod/import", json={'content': dat.text})
    assert parsed.json()['kind'] == "dat"
    assert parsed.json()['qsorts'] == planted_ranks().tolist()

    report = client.post(
        "/api/pqmethod/validate", json={'session_id': session_id, 'reference': listing.text}
    )
    assert report.status_code == 200
    assert report.json()['passed'] is True


def test_pqmethod_import_format_error(client):
    response = client.post("/api/pqmethod/import", json={'content': "  0 x5 20\r\n -1  1  1  1  1\r\n"})
    assert response.status_code == 422
    assert response.json()['detail']['error'] == "pqmethod_format"
    assert response.json()['detail']['context']['line'] == 1


def test_bootstrap_start_and_cancel(client, session_id):
    client.post(f"/api/sessions/{session_id}/apply", json={'method': 'varimax', 'expected_version': 0})
    response = client.post(
        f"/api/sessions/{session_id}/bootstrap", json={'n_resamples': 100000, 'seed': 1}
    )
    assert response.status_code == 200
    task_id = response.json()['task_id']
    assert response.json()['total'] == 100000

    response = client.delete(f"/api/bootstrap/{task_id}")
    assert response.status_code == 200
    assert response.json()['status'] in ("cancelling", "cancelled")


def test_event_stream_ends_with_close(client, session_id):
    client.post(f"/api/sessions/{session_id}/apply", json={'method': 'varimax', 'expected_version': 0})

    def close_later():
        time.sleep(0.5)
        app.state.engine.close_session(session_id)

    closer = threading.Thread(target=close_later)
    closer.start()
    response = client.get(f"/api/sessions/{session_id}/events")
    closer.join()

    assert response.status_code == 200
    events = [json.loads(line) for line in response.text.splitlines() if line]
    assert events[-1]['type'] == "closed"
    assert events[-1]['version'] == 1


def test_apply_response_matches_committed_outputs(client, session_id):
    applied = client.post(
        f"/api/sessions/{session_id}/apply", json={'method': 'quartimax', 'expected_version': 0}
    ).json()
    results = client.get(f"/api/sessions/{session_id}/results").json()

    assert applied['version'] == 1
    assert applied['loadings'] == results['rotated']['loadings']
    assert applied['z_scores'] == [a['z_scores'] for a in results['arrays']]


def test_lifespan_starts_idle_reaper(client):
    reaper = app.state.engine._reaper
    assert reaper is not None
    assert reaper.is_alive()
