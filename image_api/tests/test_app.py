import unittest
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from api_test_utils import CLIENT_URL, PNG_BYTES, ApiTestCase, isolate_settings
from image_api.app import create_app
from image_api.db import InMemoryDbClient, UploadStatus
from image_api.dependencies import get_db_client, get_oauth_client
from image_api.oauth import GoogleOAuthClient
from image_api.secret_store import MissingSecretError
from image_api.storage import original_path, thumbnail_path


class AuthApiTests(ApiTestCase):
    def test_google_login_redirects_with_state(self):
        response = self.client.get("/api/auth/google", follow_redirects=False)
        self.assertEqual(response.status_code, 302)
        location = urlparse(response.headers["location"])
        self.assertEqual(location.netloc, "accounts.google.com")
        params = parse_qs(location.query)
        self.assertEqual(params["access_type"], ["offline"])
        self.assertEqual(params["response_type"], ["code"])
        self.assertIn("userinfo.email", params["scope"][0])
        self.assertTrue(params["state"][0])

    def test_callback_stores_session_and_user(self):
        self.login()
        me = self.client.get("/api/auth/me")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(
            me.json(),
            {
                "id": "user-1",
                "displayName": "Ada Lovelace",
                "emails": [{"value": "ada@example.com"}],
            },
        )

        db = get_db_client()
        self.assertIsInstance(db, InMemoryDbClient)
        self.assertEqual(db.get_user("user-1").email, "ada@example.com")

    def test_callback_with_wrong_state_fails_login(self):
        self.client.get("/api/auth/google", follow_redirects=False)
        response = self.client.get(
            "/api/auth/google/callback",
            params={"code": "auth-code", "state": "forged"},
            follow_redirects=False,
        )
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["location"], f"{CLIENT_URL}/login-failed")
        self.assertEqual(self.client.get("/api/auth/me").status_code, 401)

    def test_callback_token_failure_redirects_to_login_failed(self):
        self.oauth.fail_exchange = True
        start = self.client.get("/api/auth/google", follow_redirects=False)
        state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]
        response = self.client.get(
            "/api/auth/google/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )
        self.assertEqual(response.headers["location"], f"{CLIENT_URL}/login-failed")

    def callback_with_valid_state(self):
        start = self.client.get("/api/auth/google", follow_redirects=False)
        state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]
        return self.client.get(
            "/api/auth/google/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

    @patch("image_api.oauth.requests.post")
    def test_callback_garbled_token_response_redirects_to_login_failed(self, mock_post):
        mock_post.return_value.status_code = 200
        mock_post.return_value.json.side_effect = ValueError("Expecting value")
        self.app.dependency_overrides[get_oauth_client] = lambda: GoogleOAuthClient(
            client_id="test-client-id",
            client_secret="test-client-secret",
            redirect_uri="http://testserver/api/auth/google/callback",
        )

        response = self.callback_with_valid_state()
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["location"], f"{CLIENT_URL}/login-failed")
        self.assertEqual(self.client.get("/api/auth/me").status_code, 401)

    def test_callback_user_store_failure_does_not_sign_in(self):
        with patch.object(get_db_client(), "upsert_user", side_effect=RuntimeError("db down")):
            response = self.callback_with_valid_state()
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["location"], f"{CLIENT_URL}/login-failed")
        self.assertEqual(self.client.get("/api/auth/me").status_code, 401)

    def test_me_requires_session(self):
        response = self.client.get("/api/auth/me")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Unauthorized"})

    def test_logout_clears_session(self):
        self.login()
        response = self.client.post("/api/auth/logout")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"message": "Logged out successfully"})
        self.assertEqual(self.client.get("/api/auth/me").status_code, 401)

    def test_logout_requires_session(self):
        self.assertEqual(self.client.post("/api/auth/logout").status_code, 401)

    def test_cors_allows_dashboard_origin_with_credentials(self):
        response = self.client.get("/api/auth/me", headers={"Origin": CLIENT_URL})
        self.assertEqual(response.headers["access-control-allow-origin"], CLIENT_URL)
        self.assertEqual(response.headers["access-control-allow-credentials"], "true")


class ImageApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.login()

    def test_upload_stores_original_under_user_prefix(self):
        response = self.upload()
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["success"])
        filename = payload["filename"]
        self.assertTrue(filename.endswith(".png"))
        self.assertNotIn("..", filename)
        self.assertEqual(
            self.storage.stored_objects[original_path("user-1", filename)], PNG_BYTES
        )

        status = self.client.get(f"/api/uploads/{filename}").json()
        self.assertEqual(status["original_filename"], "cat.png")
        self.assertEqual(status["size_bytes"], len(PNG_BYTES))

    def test_upload_requires_file(self):
        response = self.client.post("/api/images", data={"note": "no file"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "A file is required."})

    def test_upload_rejects_non_images(self):
        response = self.upload(name="notes.txt", data=b"hello", content_type="text/plain")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Only image files are allowed."})

    def test_upload_rejects_large_files(self):
        response = self.upload(data=b"\x00" * 2048)
        self.assertEqual(response.status_code, 413)
        self.assertEqual(response.json(), {"error": "File too large."})
        self.assertEqual(self.storage.stored_objects, {})

    def test_upload_storage_failure(self):
        with patch.object(self.storage, "upload_bytes", side_effect=RuntimeError("boom")):
            response = self.upload()
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "Failed to upload image"})
        self.assertEqual(get_db_client().list_uploads("user-1"), [])

    def test_upload_record_failure_removes_stored_object(self):
        with patch.object(get_db_client(), "create_upload", side_effect=RuntimeError("db down")):
            response = self.upload()
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "Failed to upload image"})
        self.assertEqual(self.storage.stored_objects, {})

    def test_list_images_returns_signed_urls_for_thumbnails(self):
        filename = self.upload().json()["filename"]
        self.assertEqual(self.client.get("/api/images").json(), [])

        # The external thumbnail function writes its output.
        self.storage.upload_bytes(thumbnail_path("user-1", filename), b"thumb", "image/png")
        self.storage.upload_bytes("thumbnails/user-1/", b"", "application/x-directory")

        images = self.client.get("/api/images").json()
        self.assertEqual(len(images), 1)
        self.assertEqual(images[0]["filename"], filename)
        self.assertIn(f"thumbnails/user-1/thumb_{filename}", images[0]["thumbnailUrl"])
        self.assertIn(f"/user-1/{filename}", images[0]["fullUrl"])
        self.assertIn("expires=900", images[0]["fullUrl"])

    def test_list_images_storage_failure(self):
        with patch.object(self.storage, "list_paths", side_effect=RuntimeError("boom")):
            response = self.client.get("/api/images")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "Failed to fetch images"})

    def test_delete_removes_original_and_thumbnail(self):
        filename = self.upload().json()["filename"]
        self.storage.upload_bytes(thumbnail_path("user-1", filename), b"thumb", "image/png")

        response = self.client.delete(f"/api/images/{filename}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True, "message": "Image deleted"})
        self.assertFalse(self.storage.exists(original_path("user-1", filename)))
        self.assertFalse(self.storage.exists(thumbnail_path("user-1", filename)))
        self.assertEqual(self.client.get(f"/api/uploads/{filename}").status_code, 404)

    def test_delete_without_thumbnail_still_succeeds(self):
        filename = self.upload().json()["filename"]
        response = self.client.delete(f"/api/images/{filename}")
        self.assertEqual(response.status_code, 200)

    def test_thumbnail_delete_failure_still_drops_upload_record(self):
        filename = self.upload().json()["filename"]
        thumb = thumbnail_path("user-1", filename)
        self.storage.upload_bytes(thumb, b"thumb", "image/png")
        real_delete = self.storage.delete

        def flaky_delete(path):
            if path == thumb:
                raise RuntimeError("boom")
            real_delete(path)

        with patch.object(self.storage, "delete", side_effect=flaky_delete):
            response = self.client.delete(f"/api/images/{filename}")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "Failed to delete image"})
        self.assertFalse(self.storage.exists(original_path("user-1", filename)))
        self.assertEqual(self.client.get(f"/api/uploads/{filename}").status_code, 404)

    def test_delete_missing_file(self):
        response = self.client.delete("/api/images/missing.png")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "File not found"})

    def test_users_cannot_see_or_delete_each_others_images(self):
        filename = self.upload().json()["filename"]
        self.storage.upload_bytes(thumbnail_path("user-1", filename), b"thumb", "image/png")

        self.login(user_id="user-2", name="Grace Hopper", email="grace@example.com")
        self.assertEqual(self.client.get("/api/images").json(), [])
        self.assertEqual(self.client.delete(f"/api/images/{filename}").status_code, 404)
        self.assertEqual(self.client.get(f"/api/uploads/{filename}").status_code, 404)
        self.assertTrue(self.storage.exists(original_path("user-1", filename)))

    def test_image_routes_require_session(self):
        self.client.post("/api/auth/logout")
        self.assertEqual(self.client.get("/api/images").status_code, 401)
        self.assertEqual(self.upload().status_code, 401)
        self.assertEqual(self.client.delete("/api/images/a.png").status_code, 401)


class NotificationSocketTests(ApiTestCase):
    def test_socket_without_session_is_rejected(self):
        with self.assertRaises(WebSocketDisconnect) as ctx:
            with self.client.websocket_connect("/ws"):
                pass
        self.assertEqual(ctx.exception.code, 1008)

    def test_upload_notifies_connected_user(self):
        self.login()
        with self.client.websocket_connect("/ws", headers=self.session_headers()) as ws:
            filename = self.upload().json()["filename"]
            message = ws.receive_json()

        self.assertEqual(message, {"type": "PROCESSING_COMPLETE", "filename": filename})
        status = self.client.get(f"/api/uploads/{filename}").json()
        self.assertEqual(status["status"], UploadStatus.COMPLETE.name)

    def test_notification_goes_only_to_uploader(self):
        self.login(user_id="user-2", name="Grace Hopper", email="grace@example.com")
        with self.client.websocket_connect("/ws", headers=self.session_headers()) as ws:
            self.login()
            first = self.upload().json()["filename"]
            self.login(user_id="user-2", name="Grace Hopper", email="grace@example.com")
            second = self.upload().json()["filename"]
            message = ws.receive_json()

        # Only user-2's upload reaches user-2's socket.
        self.assertEqual(message["filename"], second)
        self.assertNotEqual(message["filename"], first)


class UploadStatusApiTests(ApiTestCase):
    env_overrides = {"PROCESSING_NOTIFY_DELAY_SECONDS": "60"}

    def test_new_upload_is_processing(self):
        self.login()
        filename = self.upload().json()["filename"]
        response = self.client.get(f"/api/uploads/{filename}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "PROCESSING")

        listing = self.client.get("/api/uploads").json()["uploads"]
        self.assertEqual([u["filename"] for u in listing], [filename])

    def test_unknown_upload(self):
        self.login()
        response = self.client.get("/api/uploads/nope.png")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "Upload not found"})


class StartupTests(unittest.TestCase):
    def test_refuses_to_start_without_session_secret(self):
        isolate_settings(self, SESSION_SECRET="")
        with self.assertRaises(MissingSecretError):
            create_app()

    def test_starts_without_google_credentials_but_login_is_unavailable(self):
        isolate_settings(self, GOOGLE_CLIENT_ID="", GOOGLE_CLIENT_SECRET="")
        with TestClient(create_app()) as client:
            response = client.get("/api/auth/google", follow_redirects=False)
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json(), {"error": "Google sign-in is not configured"})


if __name__ == "__main__":
    unittest.main()
