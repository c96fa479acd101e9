"""
Face Login Client: webcam scan loop against the Face Login API

Opens the webcam, samples a frame every --interval seconds and drives an
enrollment or verification session on the API server until it finishes:

  enroll  the first frame with a face is enrolled for the account
  verify  frames are matched until one is accepted (prints the one-time token)
          or the session's attempt budget runs out

By default embeddings are computed locally with the configured embedding
oracle and only the vector is sent. With --send-frames the JPEG frames are
sent instead and the server computes the embeddings.

Usage:
    # Start the server first:
    python -m api.app

    python scripts/face_login.py enroll --account alice@example.com
    python scripts/face_login.py verify --account alice@example.com
    python scripts/face_login.py verify --account alice@example.com --send-frames

Exit codes: 0 success, 1 rejected / timed out, 2 error.
"""

import argparse
import base64
import json
import sys
import time
from pathlib import Path
from typing import Iterator
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import cv2
import numpy as np

PROJECT_ROOT = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(PROJECT_ROOT))

from core.config import get_config, get_embedding_oracle_config, get_matching_config
from core.embedding_oracle import FaceEmbeddingOracle, iter_samples

DEFAULT_API_URL = "http://localhost:8000"


def print_banner(text: str, char: str = "="):
    line = char * 60
    print(f"\n{line}")
    print(text)
    print(line)


def post_json(url: str, payload: dict, timeout: float = 30.0) -> tuple:
    """POST a JSON payload. Returns (status_code, body)."""
    req = Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urlopen(req, timeout=timeout) as resp:
            return resp.status, json.loads(resp.read().decode("utf-8"))
    except HTTPError as e:
        return e.code, json.loads(e.read().decode("utf-8") or "{}")


def webcam_frames(camera_index: int, interval: float) -> Iterator[np.ndarray]:
    """Yield one BGR frame every interval seconds until the generator is closed."""
    cap = cv2.VideoCapture(camera_index)
    if not cap.isOpened():
        raise RuntimeError(f"Unable to open camera {camera_index}")

    cap.set(cv2.CAP_PROP_FRAME_WIDTH, 640)
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, 480)

    try:
        while True:
            ok, frame = cap.read()
            if ok:
                yield frame
            time.sleep(interval)
    finally:
        cap.release()


def encode_frame(frame: np.ndarray) -> str:
    ok, buffer = cv2.imencode(".jpg", frame)
    if not ok:
        raise RuntimeError("Failed to encode frame as JPEG")
    return base64.b64encode(buffer.tobytes()).decode("ascii")


class FrameOracle:
    """Pass-through used with --send-frames: the server runs the oracle."""

    def capture(self, frame: np.ndarray) -> np.ndarray:
        return frame


def run_session(
    api_url: str,
    kind: str,
    account_id: str,
    camera_index: int,
    interval: float,
    send_frames: bool,
    max_attempts: int,
    timeout_sec: float,
) -> int:
    status, body = post_json(f"{api_url}/sessions/{kind}", {"accountId": account_id})
    if status != 201:
        print(f"  Could not start {kind} session: {body.get('error')} - {body.get('detail') or body.get('message')}")
        return 1 if body.get("error") == "UnknownAccount" else 2

    session_id = body["sessionId"]
    print(f"  Session {session_id[:8]} opened ({body['attemptsRemaining']} attempts)")

    if send_frames:
        oracle = FrameOracle()
    else:
        oracle_config = dict(get_embedding_oracle_config())
        oracle_config.setdefault("embedding_dim", get_matching_config().get("embedding_dim"))
        oracle = FaceEmbeddingOracle(oracle_config)
        print("  Loading embedding model...")
        oracle.load_model()

    samples = iter_samples(
        oracle,
        webcam_frames(camera_index, interval),
        max_attempts=max_attempts,
        timeout_sec=timeout_sec,
    )

    try:
        for sample in samples:
            if send_frames:
                payload = {"frame": encode_frame(sample)}
            elif sample is None:
                payload = {}
            else:
                payload = {"embedding": [float(v) for v in sample]}

            status, body = post_json(f"{api_url}/sessions/{session_id}/samples", payload)

            if status == 200:
                state = body["state"]
                face = "face" if body.get("faceDetected") else "no face"
                distance = body.get("distance")
                dist_str = f", distance={distance:.4f}" if distance is not None else ""
                print(f"  [{body['attempts']:02d}] {state} ({face}{dist_str})")

                if state == "Enrolled":
                    print_banner("ENROLLMENT: COMPLETE")
                    return 0
                if state == "Verified":
                    print_banner("VERIFICATION: MATCH")
                    print(f"  Token:      {body['token']}")
                    print(f"  Expires at: {body['expiresAt']}")
                    return 0
                continue

            error = body.get("error")
            print(f"  {error}: {body.get('detail') or body.get('message')}")
            if body.get("retryable"):
                continue
            if error == "NoMatch":
                print_banner("VERIFICATION: NO MATCH")
                return 1
            return 2
    finally:
        samples.close()

    print_banner("SCAN BUDGET EXHAUSTED")
    return 1


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Enroll or verify a face against the Face Login API using the webcam",
    )
    parser.add_argument("command", choices=["enroll", "verify"])
    parser.add_argument("--account", required=True, help="Account email or user id")
    parser.add_argument(
        "--api-url", type=str, default=DEFAULT_API_URL,
        help=f"API server URL (default: {DEFAULT_API_URL})",
    )
    parser.add_argument("--camera", type=int, default=0, help="Camera index (default: 0)")
    parser.add_argument(
        "--interval", type=float, default=0.5,
        help="Seconds between scans (default: 0.5)",
    )
    parser.add_argument(
        "--send-frames", action="store_true",
        help="Send JPEG frames and let the server compute embeddings",
    )
    args = parser.parse_args()

    config = get_config()
    section = config["enrollment" if args.command == "enroll" else "verification"]
    kind = "enrollment" if args.command == "enroll" else "verification"

    print_banner(f"FACE LOGIN: {args.command.upper()}")
    print(f"  Server:  {args.api_url}")
    print(f"  Account: {args.account}")
    print(f"  Mode:    {'server-side embeddings' if args.send_frames else 'client-side embeddings'}")

    try:
        return run_session(
            args.api_url,
            kind,
            args.account,
            args.camera,
            args.interval,
            args.send_frames,
            max_attempts=int(section.get("max_attempts", 20)),
            timeout_sec=float(section.get("timeout_sec", 15.0)),
        )
    except URLError as e:
        reason = getattr(e, "reason", e)
        print(f"\n  ERROR: Cannot reach API server at {args.api_url}")
        print(f"  Reason: {reason}")
        print("\n  Start the server first:")
        print("    python -m api.app")
        return 2
    except RuntimeError as e:
        print(f"\n  ERROR: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
