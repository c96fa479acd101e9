"""
Tests for API Endpoints

This test suite verifies:
- POST /verify: 200 token, 404 UnknownAccount, 401 NoMatch, 400 BadRequest
- POST /enroll and re-enrollment
- Session endpoints for continuous scanning (embedding and frame ticks)
- Credential redemption, account management and health check
- Collaborator failures map to 503 InternalError, never NoMatch

Run with: pytest tests/test_api_endpoints.py -v

Note: The recognition model is never loaded. Frame ticks use a mocked
embedding oracle; everything else runs against a temporary SQLite store.
"""

import os
import sys
import base64
import tempfile
import shutil
from contextlib import ExitStack
import pytest
import numpy as np
import cv2
from unittest.mock import MagicMock, patch

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient

from core.auth_orchestrator import AuthOrchestrator, SampleBudget
from core.credential_issuer import MagicLinkIssuer
from core.descriptor_store import DescriptorStore
from core.errors import CredentialIssuerError, StoreUnavailableError
from core.matching import EuclideanMatcher

ALICE = "alice@example.com"


def make_embedding(dim: int = 128, seed: int = 0) -> list:
    rng = np.random.default_rng(seed)
    return [float(v) for v in rng.normal(0, 0.1, dim)]


def shifted(embedding: list, offset: float) -> list:
    return [v + offset for v in embedding]


def jpeg_b64() -> str:
    ok, buffer = cv2.imencode(".jpg", np.zeros((48, 64, 3), dtype=np.uint8))
    assert ok
    return base64.b64encode(buffer.tobytes()).decode("ascii")


@pytest.fixture
def temp_dir():
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir)


@pytest.fixture
def store(temp_dir):
    s = DescriptorStore(os.path.join(temp_dir, "api.db"), embedding_dim=128)
    yield s
    s.close()


@pytest.fixture
def issuer(temp_dir):
    i = MagicLinkIssuer(os.path.join(temp_dir, "api.db"), ttl_sec=300)
    yield i
    i.close()


@pytest.fixture
def orchestrator(store, issuer):
    return AuthOrchestrator(
        store=store,
        matcher=EuclideanMatcher(),
        issuer=issuer,
        enrollment_budget=SampleBudget(max_attempts=3, timeout_sec=30.0),
        verification_budget=SampleBudget(max_attempts=3, timeout_sec=15.0),
        embedding_dim=128,
    )


@pytest.fixture
def oracle():
    mock_oracle = MagicMock()
    mock_oracle.backend = "face_recognition"
    mock_oracle.is_loaded = False
    mock_oracle.capture.return_value = None
    return mock_oracle


@pytest.fixture
def client(orchestrator, store, issuer, oracle):
    """Create test client wired to temporary services."""
    with ExitStack() as stack:
        for target in (
            "api.routes.verification.get_orchestrator",
            "api.routes.enrollment.get_orchestrator",
            "api.routes.sessions.get_orchestrator",
            "api.app.get_orchestrator",
        ):
            stack.enter_context(patch(target, return_value=orchestrator))
        stack.enter_context(patch("api.routes.management.get_descriptor_store", return_value=store))
        stack.enter_context(patch("api.app.get_descriptor_store", return_value=store))
        stack.enter_context(patch("api.routes.credentials.get_credential_issuer", return_value=issuer))
        stack.enter_context(patch("api.routes.sessions.get_embedding_oracle", return_value=oracle))
        stack.enter_context(patch("api.app.get_embedding_oracle", return_value=oracle))

        # Import app after patching
        from api.app import app
        yield TestClient(app)


@pytest.fixture
def enrolled(store):
    embedding = make_embedding()
    store.put_embedding(ALICE, np.array(embedding))
    return embedding


class TestVerifyEndpoint:
    """Tests for POST /verify."""

    def test_match_returns_token(self, client, enrolled):
        response = client.post("/verify", json={"accountId": ALICE, "embedding": shifted(enrolled, 0.001)})
        assert response.status_code == 200

        data = response.json()
        assert data["success"] is True
        assert isinstance(data["token"], str) and data["token"]
        assert data["distance"] < 0.6
        assert "expiresAt" in data
        assert "embedding" not in data

    def test_unknown_account(self, client):
        response = client.post("/verify", json={"accountId": "nobody@example.com", "embedding": make_embedding()})
        assert response.status_code == 404

        data = response.json()
        assert data["error"] == "UnknownAccount"
        assert data["message"] == "User not found"
        assert "distance" not in data

    def test_no_match(self, client, enrolled):
        response = client.post("/verify", json={"accountId": ALICE, "embedding": shifted(enrolled, 0.5)})
        assert response.status_code == 401

        data = response.json()
        assert data["error"] == "NoMatch"
        assert data["message"] == "Face not recognized"
        assert data["distance"] >= 0.6
        assert "token" not in data

    def test_wrong_length(self, client, enrolled):
        response = client.post("/verify", json={"accountId": ALICE, "embedding": make_embedding(dim=64)})
        assert response.status_code == 400
        assert response.json()["error"] == "BadRequest"

    def test_missing_embedding(self, client):
        response = client.post("/verify", json={"accountId": ALICE})
        assert response.status_code == 400
        assert response.json()["error"] == "BadRequest"

    def test_missing_account(self, client):
        response = client.post("/verify", json={"embedding": make_embedding()})
        assert response.status_code == 400

    def test_empty_embedding(self, client):
        response = client.post("/verify", json={"accountId": ALICE, "embedding": []})
        assert response.status_code == 400

    def test_non_numeric_embedding(self, client):
        response = client.post("/verify", json={"accountId": ALICE, "embedding": ["a"] * 128})
        assert response.status_code == 400

    def test_boolean_elements_rejected(self, client, store):
        store.put_embedding(ALICE, np.array([1.0, 0.0] * 64))

        response = client.post("/verify", json={"accountId": ALICE, "embedding": [True, False] * 64})

        assert response.status_code == 400
        assert response.json()["error"] == "BadRequest"
        assert "token" not in response.json()

    def test_numeric_string_elements_rejected(self, client, store):
        store.put_embedding(ALICE, np.array([1.0, 0.0] * 64))

        response = client.post("/verify", json={"accountId": ALICE, "embedding": ["1", "0"] * 64})

        assert response.status_code == 400
        assert response.json()["error"] == "BadRequest"

    def test_integer_elements_accepted(self, client, store):
        store.put_embedding(ALICE, np.array([1.0, 0.0] * 64))

        response = client.post("/verify", json={"accountId": ALICE, "embedding": [1, 0] * 64})

        assert response.status_code == 200
        assert response.json()["distance"] == 0.0

    def test_corrupt_record_is_503(self, client, store):
        store.put_embedding(ALICE, np.array(make_embedding()))
        conn = store._get_connection()
        conn.execute("UPDATE identities SET embedding = ? WHERE account_id = ?", ("{not json", ALICE))
        conn.commit()

        response = client.post("/verify", json={"accountId": ALICE, "embedding": make_embedding()})

        assert response.status_code == 503
        assert response.json()["error"] == "InternalError"
        assert response.json()["retryable"] is True

    def test_snake_case_accepted(self, client, enrolled):
        response = client.post("/verify", json={"account_id": ALICE, "embedding": enrolled})
        assert response.status_code == 200

    def test_store_unavailable_is_503(self, client, issuer):
        broken_store = MagicMock()
        broken_store.get_embedding.side_effect = StoreUnavailableError("disk gone")
        broken = AuthOrchestrator(store=broken_store, matcher=EuclideanMatcher(), issuer=issuer)

        with patch("api.routes.verification.get_orchestrator", return_value=broken):
            response = client.post("/verify", json={"accountId": ALICE, "embedding": make_embedding()})

        assert response.status_code == 503
        data = response.json()
        assert data["error"] == "InternalError"
        assert data["retryable"] is True

    def test_issuer_failure_is_503_not_401(self, client, store, enrolled):
        broken_issuer = MagicMock()
        broken_issuer.issue.side_effect = CredentialIssuerError("down")
        broken = AuthOrchestrator(store=store, matcher=EuclideanMatcher(), issuer=broken_issuer)

        with patch("api.routes.verification.get_orchestrator", return_value=broken):
            response = client.post("/verify", json={"accountId": ALICE, "embedding": enrolled})

        assert response.status_code == 503
        assert response.json()["error"] == "InternalError"


class TestEnrollEndpoint:
    """Tests for POST /enroll."""

    def test_enroll_then_verify(self, client):
        embedding = make_embedding(seed=3)
        response = client.post("/enroll", json={"accountId": ALICE, "embedding": embedding})
        assert response.status_code == 201

        data = response.json()
        assert data["success"] is True
        assert data["accountId"] == ALICE
        assert data["replaced"] is False

        verify = client.post("/verify", json={"accountId": ALICE, "embedding": embedding})
        assert verify.status_code == 200

    def test_reenroll_replaces(self, client):
        client.post("/enroll", json={"accountId": ALICE, "embedding": make_embedding(seed=1)})
        response = client.post("/enroll", json={"accountId": ALICE, "embedding": make_embedding(seed=2)})

        assert response.status_code == 201
        assert response.json()["replaced"] is True

        old = client.post("/verify", json={"accountId": ALICE, "embedding": make_embedding(seed=1)})
        assert old.status_code == 401

    def test_enroll_wrong_length(self, client):
        response = client.post("/enroll", json={"accountId": ALICE, "embedding": make_embedding(dim=127)})
        assert response.status_code == 400

    def test_enroll_while_session_open(self, client):
        client.post("/sessions/enrollment", json={"accountId": ALICE})
        response = client.post("/enroll", json={"accountId": ALICE, "embedding": make_embedding()})

        assert response.status_code == 400
        assert response.json()["detail"] == "EnrollmentInProgress"


class TestSessionEndpoints:
    """Tests for the continuous-scanning session endpoints."""

    def test_enrollment_session(self, client, store):
        start = client.post("/sessions/enrollment", json={"accountId": ALICE})
        assert start.status_code == 201
        session = start.json()
        assert session["state"] == "AwaitingEnrollmentEmbedding"
        assert session["kind"] == "enrollment"

        no_face = client.post(f"/sessions/{session['sessionId']}/samples", json={})
        assert no_face.status_code == 200
        assert no_face.json()["faceDetected"] is False
        assert no_face.json()["attemptsRemaining"] == 2

        done = client.post(f"/sessions/{session['sessionId']}/samples", json={"embedding": make_embedding()})
        assert done.status_code == 200
        assert done.json()["state"] == "Enrolled"
        assert store.has_embedding(ALICE)

    def test_enrollment_timeout(self, client):
        session_id = client.post("/sessions/enrollment", json={"accountId": ALICE}).json()["sessionId"]

        for _ in range(2):
            client.post(f"/sessions/{session_id}/samples", json={})
        response = client.post(f"/sessions/{session_id}/samples", json={})

        assert response.status_code == 400
        assert response.json()["detail"] == "EnrollmentTimeout"

    def test_second_enrollment_rejected(self, client):
        client.post("/sessions/enrollment", json={"accountId": ALICE})
        response = client.post("/sessions/enrollment", json={"accountId": ALICE})

        assert response.status_code == 400
        assert response.json()["detail"] == "EnrollmentInProgress"

    def test_verification_session(self, client, enrolled):
        start = client.post("/sessions/verification", json={"accountId": ALICE})
        assert start.status_code == 201
        session_id = start.json()["sessionId"]

        miss = client.post(f"/sessions/{session_id}/samples", json={"embedding": shifted(enrolled, 0.5)})
        assert miss.status_code == 200
        assert miss.json()["matched"] is False
        assert miss.json()["state"] == "AwaitingVerificationEmbedding"

        hit = client.post(f"/sessions/{session_id}/samples", json={"embedding": enrolled})
        assert hit.status_code == 200
        data = hit.json()
        assert data["state"] == "Verified"
        assert data["token"]

    def test_verification_session_rejected(self, client, enrolled):
        session_id = client.post("/sessions/verification", json={"accountId": ALICE}).json()["sessionId"]

        for _ in range(2):
            client.post(f"/sessions/{session_id}/samples", json={"embedding": shifted(enrolled, 0.5)})
        response = client.post(f"/sessions/{session_id}/samples", json={"embedding": shifted(enrolled, 0.5)})

        assert response.status_code == 401
        assert response.json()["error"] == "NoMatch"
        assert response.json()["distance"] >= 0.6

    def test_verification_session_unknown_account(self, client):
        response = client.post("/sessions/verification", json={"accountId": "nobody@example.com"})
        assert response.status_code == 404
        assert response.json()["error"] == "UnknownAccount"

    def test_frame_sample_uses_oracle(self, client, oracle, enrolled):
        oracle.capture.return_value = np.array(enrolled)
        session_id = client.post("/sessions/verification", json={"accountId": ALICE}).json()["sessionId"]

        response = client.post(f"/sessions/{session_id}/samples", json={"frame": jpeg_b64()})

        assert response.status_code == 200
        assert response.json()["state"] == "Verified"
        assert response.json()["faceDetected"] is True
        oracle.capture.assert_called_once()

    def test_frame_without_face(self, client, oracle, enrolled):
        session_id = client.post("/sessions/verification", json={"accountId": ALICE}).json()["sessionId"]

        response = client.post(f"/sessions/{session_id}/samples", json={"frame": jpeg_b64()})

        assert response.status_code == 200
        assert response.json()["faceDetected"] is False
        assert response.json()["attempts"] == 1

    def test_invalid_frame(self, client, enrolled):
        session_id = client.post("/sessions/verification", json={"accountId": ALICE}).json()["sessionId"]
        response = client.post(f"/sessions/{session_id}/samples", json={"frame": "not-an-image"})
        assert response.status_code == 400

    def test_embedding_and_frame_rejected(self, client, enrolled):
        session_id = client.post("/sessions/verification", json={"accountId": ALICE}).json()["sessionId"]
        response = client.post(
            f"/sessions/{session_id}/samples",
            json={"embedding": enrolled, "frame": jpeg_b64()},
        )
        assert response.status_code == 400

    def test_boolean_sample_rejected(self, client, enrolled):
        session_id = client.post("/sessions/verification", json={"accountId": ALICE}).json()["sessionId"]

        response = client.post(f"/sessions/{session_id}/samples", json={"embedding": [True] * 128})

        assert response.status_code == 400
        assert client.get(f"/sessions/{session_id}").json()["attempts"] == 0

    def test_unknown_session(self, client):
        response = client.post("/sessions/missing/samples", json={"embedding": make_embedding()})
        assert response.status_code == 400
        assert response.json()["error"] == "BadRequest"

    def test_get_and_abandon(self, client, enrolled):
        session_id = client.post("/sessions/verification", json={"accountId": ALICE}).json()["sessionId"]

        status = client.get(f"/sessions/{session_id}")
        assert status.status_code == 200
        assert status.json()["state"] == "AwaitingVerificationEmbedding"

        assert client.delete(f"/sessions/{session_id}").status_code == 204
        assert client.get(f"/sessions/{session_id}").status_code == 400


class TestCredentialEndpoints:
    """Tests for POST /credentials/redeem."""

    def test_redeem_once(self, client, enrolled):
        token = client.post("/verify", json={"accountId": ALICE, "embedding": enrolled}).json()["token"]

        first = client.post("/credentials/redeem", json={"token": token})
        assert first.status_code == 200
        assert first.json()["accountId"] == ALICE

        second = client.post("/credentials/redeem", json={"token": token})
        assert second.status_code == 400
        assert second.json()["error"] == "BadRequest"

    def test_redeem_unknown_token(self, client):
        response = client.post("/credentials/redeem", json={"token": "bogus"})
        assert response.status_code == 400


class TestAccountEndpoints:
    """Tests for account management endpoints."""

    def test_list_accounts(self, client, enrolled):
        response = client.get("/accounts")
        assert response.status_code == 200

        data = response.json()
        assert data["total"] == 1
        assert data["accounts"][0]["accountId"] == ALICE
        assert "embedding" not in data["accounts"][0]

    def test_get_account(self, client, enrolled):
        response = client.get(f"/accounts/{ALICE}")
        assert response.status_code == 200
        assert response.json()["embeddingDim"] == 128

    def test_get_unknown_account(self, client):
        response = client.get("/accounts/nobody@example.com")
        assert response.status_code == 404
        assert response.json()["error"] == "UnknownAccount"

    def test_delete_account(self, client, enrolled):
        response = client.delete(f"/accounts/{ALICE}")
        assert response.status_code == 200
        assert response.json()["success"] is True

        assert client.delete(f"/accounts/{ALICE}").status_code == 404
        verify = client.post("/verify", json={"accountId": ALICE, "embedding": enrolled})
        assert verify.status_code == 404


class TestHealthEndpoint:
    """Tests for the health check endpoint."""

    def test_health_check(self, client, enrolled):
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["oracle_backend"] == "face_recognition"
        assert data["oracle_loaded"] is False
        assert data["enrolled_accounts"] == 1
        assert data["match_threshold"] == 0.6

    def test_health_degraded_when_store_down(self, client):
        broken_store = MagicMock()
        broken_store.get_stats.side_effect = StoreUnavailableError("disk gone")

        with patch("api.app.get_descriptor_store", return_value=broken_store):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["docs"] == "/docs"
