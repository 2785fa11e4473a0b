#!/usr/bin/env python3
"""
Smoke checks against a running media storage service.

Usage: MEDIAVAULT_URL=http://localhost:8000 MEDIAVAULT_API_KEY=... python scripts/check_storage.py
"""

import hashlib
import io
import json
import os
import sys
import time
from typing import Any, Dict

import requests
from PIL import Image


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (32, 24), (200, 40, 40)).save(buffer, format="PNG")
    return buffer.getvalue()


class StorageChecker:
    """Run black-box checks against the storage API."""

    def __init__(self, base_url: str, api_key: str):
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"ApiKey {api_key}"}

    def _result(self, check_id: str, name: str, passed: bool, **details) -> Dict[str, Any]:
        return {
            "check_id": check_id,
            "name": name,
            "status": "PASS" if passed else "FAIL",
            "details": details,
        }

    def check_health(self) -> Dict[str, Any]:
        """Liveness and latency of /health."""
        start = time.time()
        response = requests.get(f"{self.base_url}/health", timeout=5)
        elapsed_ms = round((time.time() - start) * 1000, 2)
        return self._result(
            "CHK-01",
            "Health endpoint",
            response.status_code == 200 and elapsed_ms < 300,
            status_code=response.status_code,
            response_time_ms=elapsed_ms,
        )

    def check_problem_format(self) -> Dict[str, Any]:
        """Unauthenticated calls return RFC 7807 with a correlation id."""
        response = requests.get(f"{self.base_url}/api/v1/files", timeout=5)
        body = response.json()
        return self._result(
            "CHK-02",
            "Problem details format",
            response.status_code == 401
            and "correlation_id" in body
            and response.headers.get("X-Correlation-ID") == body.get("correlation_id"),
            status_code=response.status_code,
            code=body.get("code"),
        )

    def check_traversal(self) -> Dict[str, Any]:
        """Parent segments in any encoding are refused."""
        codes = []
        for probe in ("../../etc/passwd", "..\\..\\etc\\passwd", "%2e%2e/%2e%2e/etc/passwd"):
            response = requests.get(
                f"{self.base_url}/api/v1/meta/file",
                params={"path": probe},
                headers=self.headers,
                timeout=5,
            )
            codes.append(response.status_code)
        return self._result(
            "CHK-03",
            "Path traversal rejected",
            all(code == 400 for code in codes),
            status_codes=codes,
        )

    def check_round_trip(self) -> Dict[str, Any]:
        """Stage, commit, verify digest, delete."""
        payload = _png_bytes()
        staged = requests.post(
            f"{self.base_url}/api/v1/upload/temp",
            files=[("files", ("smoke.png", payload, "image/png"))],
            headers=self.headers,
            timeout=10,
        )
        if staged.status_code != 201:
            return self._result("CHK-04", "Upload round trip", False, stage_status=staged.status_code)
        session_id = staged.json()["session_id"]
        committed = requests.post(
            f"{self.base_url}/api/v1/upload/commit",
            json={
                "session_id": session_id,
                "target_base": "smoke-checks",
                "mappings": [{"temp_index": 0, "filename": f"{session_id[:8]}.png"}],
            },
            headers=self.headers,
            timeout=10,
        )
        if committed.status_code != 201:
            return self._result(
                "CHK-04", "Upload round trip", False, commit_status=committed.status_code
            )
        record = committed.json()["files"][0]
        deleted = requests.delete(
            f"{self.base_url}/api/v1/files",
            params={"path": record["storage_path"]},
            headers=self.headers,
            timeout=5,
        )
        return self._result(
            "CHK-04",
            "Upload round trip",
            record["sha256"] == hashlib.sha256(payload).hexdigest() and deleted.status_code == 204,
            storage_path=record["storage_path"],
            delete_status=deleted.status_code,
        )

    def run_all_checks(self) -> Dict[str, Any]:
        checks = [
            self.check_health,
            self.check_problem_format,
            self.check_traversal,
            self.check_round_trip,
        ]
        results = []
        for check in checks:
            try:
                result = check()
            except (requests.RequestException, ValueError, KeyError) as exc:
                result = {
                    "check_id": check.__name__,
                    "name": check.__doc__ or check.__name__,
                    "status": "ERROR",
                    "details": {"error": str(exc)},
                }
            results.append(result)
            print(f"[{result['status']}] {result['check_id']}: {result['name']}")

        passed = sum(1 for r in results if r["status"] == "PASS")
        return {
            "total_checks": len(results),
            "passed": passed,
            "failed": sum(1 for r in results if r["status"] == "FAIL"),
            "errors": sum(1 for r in results if r["status"] == "ERROR"),
            "results": results,
        }


def main():
    checker = StorageChecker(
        os.getenv("MEDIAVAULT_URL", "http://localhost:8000"),
        os.getenv("MEDIAVAULT_API_KEY", ""),
    )
    summary = checker.run_all_checks()
    with open("storage_check_results.json", "w", encoding="utf-8") as f:
        json.dump(summary, f, ensure_ascii=False, indent=2)
    print(f"{summary['passed']}/{summary['total_checks']} checks passed")
    sys.exit(0 if summary["passed"] == summary["total_checks"] else 1)


if __name__ == "__main__":
    main()
