"""
Tests for short ticket download links
"""

from datetime import datetime, timedelta

from ticketdesk.models.download_token import DownloadToken, TOKEN_LENGTH
from ticketdesk.services.download_tokens import DownloadTokenService, generate_token


class TestDownloadTokenService:
    def test_generated_token_shape(self):
        token = generate_token()
        assert len(token) == TOKEN_LENGTH
        assert token.isalnum()

    def test_short_url(self, db, settings, make_booking, make_attachment):
        attachment = make_attachment(make_booking())
        service = DownloadTokenService(db, settings)

        url = service.short_url_for(attachment)

        token = db.query(DownloadToken).one()
        assert url == f"https://tickets.example.com/t/{token.token}.pdf"
        assert token.storage_path == attachment.storage_path

    def test_valid_token_reused(self, db, settings, make_booking, make_attachment):
        attachment = make_attachment(make_booking())
        service = DownloadTokenService(db, settings)

        first = service.token_for(attachment)
        second = service.token_for(attachment)

        assert first.id == second.id

    def test_expired_token_replaced(self, db, settings, make_booking, make_attachment):
        attachment = make_attachment(make_booking())
        service = DownloadTokenService(db, settings)
        first = service.token_for(attachment)
        first.expires_at = datetime.utcnow() - timedelta(minutes=1)
        db.flush()

        assert service.token_for(attachment).id != first.id

    def test_resolve_tolerates_suffix(self, db, settings, make_booking, make_attachment):
        service = DownloadTokenService(db, settings)
        token = service.token_for(make_attachment(make_booking()))

        assert service.resolve(token.token).id == token.id
        assert service.resolve(f"{token.token}.pdf").id == token.id
        assert service.resolve("short") is None

    def test_cleanup_expired(self, db, settings, make_booking, make_attachment):
        booking = make_booking()
        service = DownloadTokenService(db, settings)
        keep = service.token_for(make_attachment(booking, name="a.pdf"))
        old = service.token_for(make_attachment(booking, name="b.pdf"))
        old.expires_at = datetime.utcnow() - timedelta(days=1)
        db.commit()

        assert service.cleanup_expired() == 1
        assert [t.id for t in db.query(DownloadToken).all()] == [keep.id]


class TestDownloadRoute:
    def _token(self, db, settings, booking, attachment):
        token = DownloadTokenService(db, settings).token_for(attachment)
        db.commit()
        return token

    def test_download_inline(self, client, db, settings, make_booking, make_attachment):
        booking = make_booking()
        token = self._token(db, settings, booking, make_attachment(booking))

        response = client.get(f"/t/{token.token}.pdf")

        assert response.status_code == 200
        assert response.content == b"%PDF-1.4 test ticket"
        assert response.headers["content-type"] == "application/pdf"
        assert response.headers["cache-control"] == "private, no-store"
        assert response.headers["content-disposition"].startswith("inline")
        db.refresh(token)
        assert token.download_count == 1
        assert token.last_downloaded_at is not None

    def test_unknown_token(self, client):
        response = client.get("/t/AAAAAAAA.pdf")
        assert response.status_code == 404
        assert response.json()["detail"] == "Link not found"

    def test_expired_token(self, client, db, settings, make_booking, make_attachment):
        booking = make_booking()
        token = self._token(db, settings, booking, make_attachment(booking))
        token.expires_at = datetime.utcnow() - timedelta(seconds=1)
        db.commit()

        assert client.get(f"/t/{token.token}.pdf").status_code == 410

    def test_missing_blob(self, client, db, settings, store, make_booking, make_attachment):
        booking = make_booking()
        attachment = make_attachment(booking)
        token = self._token(db, settings, booking, attachment)
        store.delete(attachment.storage_path)

        response = client.get(f"/t/{token.token}.pdf")

        assert response.status_code == 404
        assert response.json()["detail"] == "File not found"
