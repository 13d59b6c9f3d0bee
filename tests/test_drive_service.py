import asyncio

import pytest
import requests

from conftest import FakeResponse, FakeSession
from finsheet.drive_service import GoogleDriveDownloader, LocalFileSource
from finsheet.errors import ConfigurationError, NotFoundError, TransferError


def downloader(response):
    session = FakeSession({"/files/abc": [response]})
    return GoogleDriveDownloader(token="ya29.token", session=session), session


class TestGoogleDriveDownloader:
    def test_download(self):
        dl, session = downloader(FakeResponse(200, content=b"%PDF-1.7 body"))
        file = asyncio.run(dl.download("abc", "q3.pdf"))
        assert file.name == "q3.pdf"
        assert file.size == len(b"%PDF-1.7 body")
        _, _, kwargs = session.calls[0]
        assert kwargs["params"] == {"alt": "media"}
        assert kwargs["headers"]["Authorization"] == "Bearer ya29.token"

    def test_non_pdf_content_still_returned(self):
        dl, _ = downloader(FakeResponse(200, content=b"<html>"))
        assert asyncio.run(dl.download("abc", "q3.pdf")).content == b"<html>"

    def test_not_found(self):
        dl, _ = downloader(FakeResponse(404, text="missing"))
        with pytest.raises(NotFoundError):
            asyncio.run(dl.download("abc", "q3.pdf"))

    @pytest.mark.parametrize(
        "response",
        [FakeResponse(403, text="forbidden"), FakeResponse(200, content=b""), requests.Timeout("slow")],
    )
    def test_transfer_errors(self, response):
        dl, _ = downloader(response)
        with pytest.raises(TransferError):
            asyncio.run(dl.download("abc", "q3.pdf"))

    def test_missing_token(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_DRIVE_TOKEN", raising=False)
        with pytest.raises(ConfigurationError):
            asyncio.run(GoogleDriveDownloader(session=FakeSession()).download("abc", "q3.pdf"))


class TestLocalFileSource:
    def test_lists_pdfs_sorted(self, tmp_path):
        (tmp_path / "sub").mkdir()
        (tmp_path / "b.pdf").write_bytes(b"%PDF b")
        (tmp_path / "sub" / "a.PDF").write_bytes(b"%PDF a")
        (tmp_path / "notes.txt").write_text("x", encoding="utf-8")
        files = LocalFileSource(tmp_path).list_files()
        assert [f.name for f in files] == ["b.pdf", "a.PDF"]
        assert files[1].id == "sub/a.PDF"

    def test_download(self, tmp_path):
        (tmp_path / "b.pdf").write_bytes(b"%PDF b")
        file = asyncio.run(LocalFileSource(tmp_path).download("b.pdf", "b.pdf"))
        assert file.content == b"%PDF b"

    def test_missing_and_escaping_paths(self, tmp_path):
        source = LocalFileSource(tmp_path / "root")
        (tmp_path / "root").mkdir()
        (tmp_path / "secret.pdf").write_bytes(b"%PDF")
        with pytest.raises(NotFoundError):
            asyncio.run(source.download("nope.pdf", "nope.pdf"))
        with pytest.raises(NotFoundError):
            asyncio.run(source.download("../secret.pdf", "secret.pdf"))

    def test_empty_file(self, tmp_path):
        (tmp_path / "empty.pdf").write_bytes(b"")
        with pytest.raises(TransferError):
            asyncio.run(LocalFileSource(tmp_path).download("empty.pdf", "empty.pdf"))
