from pathlib import Path
from typing import Dict, Any

import firebase_admin
from firebase_admin import credentials, auth, db

from voice_relay.core.config import settings


def get_app() -> firebase_admin.App:
    """Return the single Firebase Admin app, initializing it on first use."""
    if not firebase_admin._apps:
        cred_path = Path(settings.FIREBASE_CREDENTIALS_FILE)
        cred = credentials.Certificate(str(cred_path))
        options = {}
        if settings.FIREBASE_DATABASE_URL:
            options["databaseURL"] = settings.FIREBASE_DATABASE_URL
        return firebase_admin.initialize_app(cred, options)
    return firebase_admin.get_app()


def verify_firebase_token(id_token: str) -> Dict[str, Any]:
    """
    Verify Firebase ID token and return decoded claims.
    Raises if token invalid/expired.
    """
    decoded = auth.verify_id_token(id_token, app=get_app())
    return decoded


def db_ref(path: str):
    """Return a database reference for a given absolute path."""
    if not path.startswith("/"):
        path = f"/{path}"
    return db.reference(path, app=get_app())
