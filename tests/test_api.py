"""Tests for api.py: FastAPI REST endpoints."""

import io
import os
import sys
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src'))

from fastapi.testclient import TestClient
from kraken_sim import SimulatedKraken, make_device
from PIL import Image

from krakenz.api import MAX_UPLOAD_BYTES, app, configure_auth, configure_device
from krakenz.errors import DeviceNotFound


def _png(color=(255, 0, 0), size=(64, 64)):
    buf = io.BytesIO()
    Image.new('RGB', size, color).save(buf, format='PNG')
    return buf.getvalue()


class ApiTestCase(unittest.TestCase):

    sim_kwargs = {}

    def setUp(self):
        configure_auth(None)
        self.device, self.sim, self.bulk = make_device(SimulatedKraken(**self.sim_kwargs))
        configure_device(self.device)
        self.addCleanup(configure_device, None)
        self.client = TestClient(app)


class TestHealthEndpoint(ApiTestCase):
    """GET /health always returns 200."""

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["status"], "ok")
        self.assertIn("version", data)


class TestAuthMiddleware(ApiTestCase):
    """Token auth middleware."""

    def tearDown(self):
        configure_auth(None)

    def test_no_token_required(self):
        resp = self.client.get("/status")
        self.assertEqual(resp.status_code, 200)

    def test_token_required_rejects_missing(self):
        configure_auth("secret123")
        resp = self.client.get("/status")
        self.assertEqual(resp.status_code, 401)

    def test_token_required_rejects_wrong(self):
        configure_auth("secret123")
        resp = self.client.get("/status", headers={"X-API-Token": "wrong"})
        self.assertEqual(resp.status_code, 401)

    def test_token_required_accepts_correct(self):
        configure_auth("secret123")
        resp = self.client.get("/status", headers={"X-API-Token": "secret123"})
        self.assertEqual(resp.status_code, 200)

    def test_health_bypasses_auth(self):
        configure_auth("secret123")
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)


class TestStatusEndpoints(ApiTestCase):

    sim_kwargs = {'liquid': 32.5, 'buckets': {2: (0, 401)}}

    def test_status(self):
        data = self.client.get("/status").json()
        self.assertAlmostEqual(data["liquid_temp"], 32.5)
        self.assertIn("pump_rpm", data)

    def test_buckets(self):
        data = self.client.get("/buckets").json()
        self.assertEqual(len(data), 16)
        self.assertEqual(data[2], {"index": 2, "state": "occupied",
                                   "start_page": 0, "size_pages": 401})
        self.assertEqual(data[0]["state"], "empty")

    @patch('krakenz.api.KrakenZ3.open', side_effect=DeviceNotFound("Kraken not found"))
    def test_no_device(self, _open):
        configure_device(None)
        resp = self.client.get("/status")
        self.assertEqual(resp.status_code, 404)

    def test_device_error_is_503(self):
        self.sim.mute(b'\x74\x01')
        resp = self.client.get("/status")
        self.assertEqual(resp.status_code, 503)


class TestControlEndpoints(ApiTestCase):

    sim_kwargs = {'brightness': 30, 'orientation': 2}

    def test_set_pump(self):
        resp = self.client.post("/speed/pump", json={"duty": 70})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"channel": "pump", "duty": 70})
        self.assertEqual(self.sim.pump_duty, 70)

    def test_pump_floor(self):
        resp = self.client.post("/speed/pump", json={"duty": 5})
        self.assertEqual(resp.status_code, 400)

    def test_unknown_channel(self):
        resp = self.client.post("/speed/radiator", json={"duty": 50})
        self.assertEqual(resp.status_code, 400)

    def test_duty_out_of_range(self):
        resp = self.client.post("/speed/fan", json={"duty": 150})
        self.assertEqual(resp.status_code, 422)

    def test_brightness(self):
        resp = self.client.post("/lcd/brightness", json={"brightness": 90})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual((self.sim.brightness, self.sim.orientation), (90, 2))


class TestImageEndpoint(ApiTestCase):

    def test_send_image(self):
        resp = self.client.post("/lcd/image", files={"image": ("a.png", _png(), "image/png")})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"sent": True, "bucket": 0})
        self.assertEqual(self.sim.visual_mode, (4, 0))
        self.assertEqual(len(self.bulk.writes[-1]), 409600)

    def test_bucket_hint(self):
        resp = self.client.post("/lcd/image?bucket=6",
                                files={"image": ("a.png", _png(), "image/png")})
        self.assertEqual(resp.json()["bucket"], 6)

    def test_invalid_image(self):
        resp = self.client.post("/lcd/image",
                                files={"image": ("a.png", b"not an image", "image/png")})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.bulk.writes, [])

    def test_bad_orientation(self):
        resp = self.client.post("/lcd/image?orientation=45",
                                files={"image": ("a.png", _png(), "image/png")})
        self.assertEqual(resp.status_code, 400)

    @patch('krakenz.api.MAX_UPLOAD_BYTES', 100)
    def test_too_large(self):
        resp = self.client.post("/lcd/image", files={"image": ("a.png", _png(), "image/png")})
        self.assertEqual(resp.status_code, 413)

    def test_limit_is_ten_megabytes(self):
        self.assertEqual(MAX_UPLOAD_BYTES, 10 * 1024 * 1024)


if __name__ == '__main__':
    unittest.main()
