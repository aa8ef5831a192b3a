from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore
from google.cloud import firestore as gcloud_firestore

log = logging.getLogger(__name__)

firebase_app: Optional[firebase_admin.App] = None
_firestore_client: Optional[firestore.Client] = None
_firestore_database_id: Optional[str] = None


def _project_id_from_credentials(credentials_path: Path) -> Optional[str]:
    try:
        with open(credentials_path, "r", encoding="utf-8") as fh:
            return json.load(fh).get("project_id")
    except (OSError, ValueError):
        return None


def init_firebase(credentials_path: Path | None = None, database_id: Optional[str] = None) -> firebase_admin.App:
    """Initialise the Firebase app once; later calls only update the database id."""
    global firebase_app, _firestore_client, _firestore_database_id

    if firebase_app is not None:
        if database_id and database_id != _firestore_database_id:
            _firestore_database_id = database_id
            _firestore_client = None
        return firebase_app

    if firebase_admin._apps:
        firebase_app = firebase_admin.get_app()
    else:
        project_id = os.getenv("FIREBASE_PROJECT_ID")
        if credentials_path is not None:
            cred = credentials.Certificate(str(credentials_path))
            project_id = project_id or _project_id_from_credentials(credentials_path)
        else:
            # Falls back to GOOGLE_APPLICATION_CREDENTIALS / metadata server.
            cred = credentials.ApplicationDefault()
        options = {"projectId": project_id} if project_id else None
        firebase_app = firebase_admin.initialize_app(cred, options=options)
        log.info("Initialized Firebase app for project '%s'", project_id or "<default>")

    _firestore_database_id = database_id
    if database_id:
        log.info("Configured Firestore database '%s'", database_id)
    return firebase_app


def get_firestore_client() -> firestore.Client:
    global _firestore_client

    if firebase_app is None:
        raise RuntimeError("Firebase app has not been initialised. Call init_firebase() first.")

    if _firestore_client is None:
        if _firestore_database_id and _firestore_database_id not in {"(default)", "default"}:
            project_id = firebase_app.project_id
            if not project_id:
                raise RuntimeError("Unable to determine Firebase project ID for Firestore client.")
            _firestore_client = gcloud_firestore.Client(
                project=project_id,
                credentials=firebase_app.credential.get_credential(),
                database=_firestore_database_id,
            )
            log.debug("Created Firestore client for database '%s'", _firestore_database_id)
        else:
            _firestore_client = firestore.client(app=firebase_app)

    return _firestore_client
