"""WSGI entry point for Gunicorn."""
import atexit

from subdesk import create_app
from subdesk.database import get_database

# Create the application instance
app = create_app()

# Close pooled connections when the worker exits
atexit.register(get_database(app).dispose)

if __name__ == "__main__":
    app.run()
