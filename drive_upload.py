#!/usr/bin/env python3
"""
Optional Google Drive mirror for captured certificates.

Uploads bytes into a Drive folder with a service account. Without a folder
id or key file the uploader is a no-op. Can be called from the main
workflow or run independently on a file on disk or a certificate URL.
"""
import argparse
import io
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, Optional

import requests
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import Resource, build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

logger = logging.getLogger("fortified.drive")

SCOPES = ["https://www.googleapis.com/auth/drive.file"]

DOWNLOAD_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/119 Safari/537.36",
    "Accept": "application/pdf,application/octet-stream,*/*",
    "Accept-Language": "en-US,en;q=0.9",
}


class DriveUploader:
    def __init__(self, folder_id: Optional[str], service_account_file: Optional[str], num_retries: int = 2):
        self.folder_id = folder_id
        self.service_account_file = service_account_file
        self.num_retries = num_retries
        self._service: Optional[Resource] = None

    @classmethod
    def from_env(cls) -> "DriveUploader":
        return cls(
            folder_id=os.getenv("DRIVE_FOLDER_ID") or None,
            service_account_file=os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE") or None,
        )

    @property
    def configured(self) -> bool:
        return bool(self.folder_id and self.service_account_file)

    def _drive(self) -> Resource:
        if self._service is None:
            credentials = service_account.Credentials.from_service_account_file(
                self.service_account_file, scopes=SCOPES
            )
            self._service = build("drive", "v3", credentials=credentials, cache_discovery=False)
            logger.info("[drive] Connected to Google Drive API")
        return self._service

    def upload(self, data: bytes, name: str, content_type: str = "application/pdf") -> Optional[Dict[str, str]]:
        """
        Upload bytes as a new Drive file.

        Returns:
            {"id": ..., "link": ...} on success, None when not configured or on failure
        """
        if not self.configured:
            logger.debug("[drive] Not configured; skipping mirror upload")
            return None
        if not data:
            return None

        metadata = {"name": name, "parents": [self.folder_id]}
        media = MediaIoBaseUpload(io.BytesIO(data), mimetype=content_type or "application/pdf", resumable=False)
        try:
            info = (
                self._drive()
                .files()
                .create(body=metadata, media_body=media, fields="id,webViewLink", supportsAllDrives=True)
                .execute(num_retries=self.num_retries)
            )
        except HttpError as e:
            logger.warning(f"[drive] Upload of {name} failed with HTTP {e.resp.status}: {e}")
            return None
        except (GoogleAuthError, ValueError, OSError) as e:
            logger.warning(f"[drive] Upload of {name} failed: {e}")
            return None

        link = info.get("webViewLink") or f"https://drive.google.com/file/d/{info['id']}/view"
        logger.info(f"[drive] Uploaded {name} ({len(data)} bytes) -> {link}")
        return {"id": info["id"], "link": link}


def fetch_document(url: str, timeout: int = 60) -> Optional[bytes]:
    """Download a certificate URL outside the browser. None on network errors or an empty body."""
    logger.info(f"[download] GET {url}")
    try:
        response = requests.get(url, headers=DOWNLOAD_HEADERS, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        logger.warning(f"[download] Network error downloading {url}: {e}")
        return None

    content_type = response.headers.get("content-type", "").lower()
    if "application/pdf" not in content_type and "application/octet-stream" not in content_type:
        logger.warning(f"[download] Content-Type is {content_type!r}, not PDF")
    return response.content or None


def main():
    parser = argparse.ArgumentParser(description="Upload a certificate PDF to the configured Drive folder")
    parser.add_argument("source", help="PDF file or http(s) URL to upload")
    parser.add_argument("--name", help="Name in Drive (defaults to the file name)")
    parser.add_argument("--folder", default=os.getenv("DRIVE_FOLDER_ID"), help="Drive folder id")
    parser.add_argument("--key-file", default=os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE"), help="Service account JSON")
    parser.add_argument("--timeout", type=int, default=60, help="Download timeout in seconds for URL sources")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
    uploader = DriveUploader(folder_id=args.folder, service_account_file=args.key_file)
    if not uploader.configured:
        print("Drive folder id and service account key file are required")
        sys.exit(2)

    if args.source.startswith(("http://", "https://")):
        data = fetch_document(args.source, args.timeout)
        default_name = Path(args.source.split("?", 1)[0]).name or "certificate.pdf"
    else:
        data = Path(args.source).read_bytes()
        default_name = Path(args.source).name
    if not data:
        print("Nothing to upload")
        sys.exit(1)

    result = uploader.upload(data, args.name or default_name)
    if result:
        print(json.dumps(result))
    sys.exit(0 if result else 1)


if __name__ == "__main__":
    main()
