# backend/wsgi.py
from apos_overrides import create_app

app = create_app()
