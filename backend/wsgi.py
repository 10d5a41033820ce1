# backend/wsgi.py
from raffle_engine import create_app

app = create_app()
