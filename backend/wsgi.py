# backend/wsgi.py
from settlehub import create_app

app = create_app()
