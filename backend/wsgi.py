# backend/wsgi.py
from lanepay import create_app

app = create_app()
