# module booking_backend.app
"""App globale construite par la factory (booking_backend.app_setup.factory)."""
from booking_backend.app_setup.factory import create_app

app = create_app()
