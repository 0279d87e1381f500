import base64
import unittest
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from reference_admin.app import create_app
from reference_admin.db import ArticleReferenceRow, ArticleRow, Database
from reference_admin.dependencies import get_database, get_storage_client
from reference_admin.storage import InMemoryStorageClient

AUTHOR = {"X-User": "alice"}
ADMIN = {"X-User": "root", "X-User-Roles": "ROLE_USER, ROLE_ADMIN_ARTICLE"}
STRANGER = {"X-User": "mallory"}

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\ntrailer\n<</Root 1 0 R>>\n%%EOF"


class ReferenceApiTestCase(unittest.TestCase):
    def setUp(self):
        self.database = Database("sqlite+pysqlite:///:memory:")
        self.storage = InMemoryStorageClient()
        app = create_app()
        app.dependency_overrides[get_database] = lambda: self.database
        app.dependency_overrides[get_storage_client] = lambda: self.storage
        self.client = TestClient(app)

        with self.database.Session() as session:
            article = ArticleRow(title="Why asteroids taste like bacon", author="alice")
            other = ArticleRow(title="Light speed travel", author="bob")
            session.add_all([article, other])
            session.commit()
            self.article_id = article.id
            self.other_article_id = other.id

    def upload(self, name="notes.txt", content=b"hello", content_type="text/plain",
               article_id=None, headers=AUTHOR):
        return self.client.post(
            f"/admin/article/{article_id or self.article_id}/references",
            files={"reference": (name, content, content_type)},
            headers=headers,
        )

    def reference_count(self) -> int:
        with self.database.Session() as session:
            return session.query(ArticleReferenceRow).count()


class UploadTests(ReferenceApiTestCase):
    def test_multipart_upload_creates_reference(self):
        response = self.upload(name="report.pdf", content=PDF_BYTES,
                               content_type="application/pdf")
        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["originalFilename"], "report.pdf")
        self.assertEqual(payload["mimeType"], "application/pdf")
        self.assertEqual(payload["articleId"], self.article_id)
        self.assertEqual(payload["position"], 0)
        self.assertNotIn("filename", payload)

        keys = self.storage.list_keys("article_reference/")
        self.assertEqual(len(keys), 1)
        self.assertTrue(keys[0].startswith("article_reference/report-"))
        self.assertTrue(keys[0].endswith(".pdf"))
        self.assertEqual(self.storage.stored_objects[keys[0]], PDF_BYTES)

    def test_json_upload_decodes_base64(self):
        response = self.client.post(
            f"/admin/article/{self.article_id}/references",
            json={
                "filename": "photo.png",
                "data": base64.b64encode(b"\x89PNG\r\n\x1a\nfake").decode(),
            },
            headers=AUTHOR,
        )
        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["originalFilename"], "photo.png")
        self.assertEqual(payload["mimeType"], "image/png")
        (key,) = self.storage.list_keys("article_reference/")
        self.assertEqual(self.storage.stored_objects[key], b"\x89PNG\r\n\x1a\nfake")

    def test_json_upload_with_invalid_base64_is_rejected(self):
        response = self.client.post(
            f"/admin/article/{self.article_id}/references",
            json={"filename": "photo.png", "data": "not base64!!"},
            headers=AUTHOR,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["violations"][0]["propertyPath"], "data")
        self.assertEqual(self.reference_count(), 0)

    def test_json_upload_missing_fields_is_rejected(self):
        response = self.client.post(
            f"/admin/article/{self.article_id}/references",
            json={"data": base64.b64encode(b"hi").decode()},
            headers=AUTHOR,
        )
        self.assertEqual(response.status_code, 400)
        paths = [v["propertyPath"] for v in response.json()["violations"]]
        self.assertIn("filename", paths)

    def test_missing_file_is_rejected(self):
        response = self.client.post(
            f"/admin/article/{self.article_id}/references",
            data={"something": "else"},
            headers=AUTHOR,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json()["violations"][0]["title"], "Please select a file to upload"
        )
        self.assertEqual(self.storage.stored_objects, {})

    def test_oversized_file_is_rejected(self):
        response = self.upload(content=b"x" * 5_000_001)
        self.assertEqual(response.status_code, 400)
        self.assertIn("too large", response.json()["detail"])
        (violation,) = response.json()["violations"]
        self.assertEqual(violation["propertyPath"], "reference")
        self.assertIn("too large (5000001 bytes)", violation["title"])
        self.assertEqual(self.reference_count(), 0)
        self.assertEqual(self.storage.stored_objects, {})

    def test_disallowed_mime_type_is_rejected(self):
        response = self.upload(
            name="run.exe", content=b"MZ\x90\x00", content_type="application/x-msdownload"
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("mime type", response.json()["violations"][0]["title"])
        self.assertEqual(self.reference_count(), 0)
        self.assertEqual(self.storage.stored_objects, {})

    def test_executable_labelled_as_image_is_rejected(self):
        response = self.upload(
            name="payload.exe", content=b"MZ\x90\x00\x03binary", content_type="image/png"
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn(
            "application/x-msdownload", response.json()["violations"][0]["title"]
        )
        self.assertEqual(self.reference_count(), 0)
        self.assertEqual(self.storage.stored_objects, {})

    def test_blank_filename_falls_back_to_stored_name(self):
        response = self.upload(name="   ")
        self.assertEqual(response.status_code, 201)
        self.assertRegex(
            response.json()["originalFilename"], r"^reference-[0-9a-f]{13}\.txt$"
        )

    def test_uploads_are_appended(self):
        self.upload(name="a.txt")
        self.upload(name="b.txt")
        response = self.upload(name="c.txt")
        self.assertEqual(response.json()["position"], 2)

        listing = self.client.get(
            f"/admin/article/{self.article_id}/references", headers=AUTHOR
        ).json()
        self.assertEqual(
            [item["originalFilename"] for item in listing], ["a.txt", "b.txt", "c.txt"]
        )

    def test_unknown_article_is_404(self):
        response = self.upload(article_id=999)
        self.assertEqual(response.status_code, 404)


class ReorderTests(ReferenceApiTestCase):
    def setUp(self):
        super().setUp()
        self.ids = [self.upload(name=f"{name}.txt").json()["id"] for name in "abc"]

    def reorder(self, body, headers=AUTHOR):
        return self.client.post(
            f"/admin/article/{self.article_id}/references/reorder",
            content=body,
            headers={**headers, "Content-Type": "application/json"},
        )

    def positions(self) -> dict:
        with self.database.Session() as session:
            return {
                row.id: row.position for row in session.query(ArticleReferenceRow)
            }

    def test_reorder_rewrites_positions(self):
        a, b, c = self.ids
        response = self.reorder(f"[{c}, {a}, {b}]")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["id"] for item in response.json()], [c, a, b])
        self.assertEqual(self.positions(), {c: 0, a: 1, b: 2})

    def test_later_reorder_replaces_earlier_one(self):
        a, b, c = self.ids
        self.assertEqual(self.reorder(f"[{c}, {a}, {b}]").status_code, 200)
        self.assertEqual(self.reorder(f"[{b}, {c}, {a}]").status_code, 200)
        self.assertEqual(self.positions(), {b: 0, c: 1, a: 2})

        listing = self.client.get(
            f"/admin/article/{self.article_id}/references", headers=AUTHOR
        ).json()
        self.assertEqual([item["id"] for item in listing], [b, c, a])

    def test_invalid_body_is_rejected(self):
        response = self.reorder("{not json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"detail": "Invalid body"})

    def test_non_list_body_is_rejected(self):
        response = self.reorder('{"order": [1, 2, 3]}')
        self.assertEqual(response.status_code, 400)

    def test_missing_id_is_rejected_without_changes(self):
        a, b, c = self.ids
        before = self.positions()
        response = self.reorder(f"[{c}, {a}]")
        self.assertEqual(response.status_code, 400)
        self.assertIn(str(b), response.json()["detail"])
        self.assertEqual(self.positions(), before)

    def test_duplicate_ids_are_rejected(self):
        a, b, c = self.ids
        response = self.reorder(f"[{a}, {a}, {b}, {c}]")
        self.assertEqual(response.status_code, 400)

    def test_foreign_reference_is_rejected(self):
        foreign = self.upload(article_id=self.other_article_id, headers=ADMIN).json()["id"]
        a, b, c = self.ids
        response = self.reorder(f"[{a}, {b}, {c}, {foreign}]")
        self.assertEqual(response.status_code, 400)
        self.assertIn(str(foreign), response.json()["detail"])


class DownloadDeleteUpdateTests(ReferenceApiTestCase):
    def setUp(self):
        super().setUp()
        self.reference = self.upload(
            name="Résumé final.pdf", content=PDF_BYTES, content_type="application/pdf"
        ).json()

    def test_download_redirects_to_signed_url(self):
        response = self.client.get(
            f"/admin/article/references/{self.reference['id']}/download",
            headers=AUTHOR,
            follow_redirects=False,
        )
        self.assertEqual(response.status_code, 302)
        location = urlparse(response.headers["location"])
        params = parse_qs(location.query)
        self.assertTrue(location.path.startswith("/storage/article_reference/resume-final-"))
        self.assertEqual(params["expires"], ["1800"])
        self.assertEqual(params["response-content-type"], ["application/pdf"])
        disposition = params["response-content-disposition"][0]
        self.assertTrue(disposition.startswith('attachment; filename="Resume final.pdf"'))
        self.assertIn("filename*=utf-8''R%C3%A9sum%C3%A9%20final.pdf", disposition)

    def test_delete_removes_record_and_file(self):
        reference_id = self.reference["id"]
        response = self.client.delete(
            f"/admin/article/references/{reference_id}", headers=AUTHOR
        )
        self.assertEqual(response.status_code, 204)
        self.assertEqual(response.content, b"")
        self.assertEqual(self.storage.stored_objects, {})

        listing = self.client.get(
            f"/admin/article/{self.article_id}/references", headers=AUTHOR
        )
        self.assertEqual(listing.json(), [])
        for method, path in (
            ("GET", f"/admin/article/references/{reference_id}/download"),
            ("DELETE", f"/admin/article/references/{reference_id}"),
            ("PUT", f"/admin/article/references/{reference_id}"),
        ):
            response = self.client.request(
                method, path, headers=AUTHOR, json={"originalFilename": "x.pdf"}
            )
            self.assertEqual(response.status_code, 404, path)

    def test_update_changes_only_input_fields(self):
        reference_id = self.reference["id"]
        with self.database.Session() as session:
            stored_key = session.get(ArticleReferenceRow, reference_id).filename

        response = self.client.put(
            f"/admin/article/references/{reference_id}",
            json={
                "originalFilename": "renamed.pdf",
                "mimeType": "text/plain",
                "filename": "../../etc/passwd",
                "position": 42,
            },
            headers=AUTHOR,
        )
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["originalFilename"], "renamed.pdf")
        self.assertEqual(payload["mimeType"], "application/pdf")
        self.assertEqual(payload["position"], 0)

        with self.database.Session() as session:
            row = session.get(ArticleReferenceRow, reference_id)
            self.assertEqual(row.filename, stored_key)
            self.assertEqual(row.original_filename, "renamed.pdf")

    def test_update_with_blank_name_is_rejected(self):
        response = self.client.put(
            f"/admin/article/references/{self.reference['id']}",
            json={"originalFilename": "   "},
            headers=AUTHOR,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json()["violations"][0]["propertyPath"], "originalFilename"
        )
        with self.database.Session() as session:
            row = session.get(ArticleReferenceRow, self.reference["id"])
            self.assertEqual(row.original_filename, "Résumé final.pdf")

    def test_update_with_invalid_json_is_rejected(self):
        response = self.client.put(
            f"/admin/article/references/{self.reference['id']}",
            content="nope",
            headers={**AUTHOR, "Content-Type": "application/json"},
        )
        self.assertEqual(response.status_code, 400)


class AuthorizationTests(ReferenceApiTestCase):
    def setUp(self):
        super().setUp()
        self.reference_id = self.upload().json()["id"]

    def assert_no_side_effects(self):
        self.assertEqual(self.reference_count(), 1)
        self.assertEqual(len(self.storage.stored_objects), 1)

    def test_stranger_is_denied_everywhere(self):
        requests = [
            ("POST", f"/admin/article/{self.article_id}/references", None),
            ("GET", f"/admin/article/{self.article_id}/references", None),
            ("POST", f"/admin/article/{self.article_id}/references/reorder",
             [self.reference_id]),
            ("GET", f"/admin/article/references/{self.reference_id}/download", None),
            ("DELETE", f"/admin/article/references/{self.reference_id}", None),
            ("PUT", f"/admin/article/references/{self.reference_id}",
             {"originalFilename": "hacked.txt"}),
        ]
        for method, path, body in requests:
            response = self.client.request(
                method, path, json=body, headers=STRANGER, follow_redirects=False
            )
            self.assertEqual(response.status_code, 403, f"{method} {path}")
            self.assertEqual(response.json(), {"detail": "Access Denied."})
        self.assert_no_side_effects()

    def test_anonymous_is_denied(self):
        response = self.client.get(f"/admin/article/{self.article_id}/references")
        self.assertEqual(response.status_code, 403)

    def test_admin_role_may_manage_any_article(self):
        response = self.client.get(
            f"/admin/article/{self.article_id}/references", headers=ADMIN
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()), 1)


if __name__ == "__main__":
    unittest.main()
