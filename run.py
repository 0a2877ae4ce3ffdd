# run.py
from src.config import Config
from src.main import app, payment_sweeper
from src.services.notification_service import wait_for_pending_emails

if __name__ == "__main__":
    try:
        app.run(
            debug=Config.DEBUG,
            host=Config.FLASK_RUN_HOST,
            port=Config.FLASK_RUN_PORT,
            # The reloader would fork a second sweeper thread
            use_reloader=False,
        )
    finally:
        payment_sweeper.stop_scheduler()
        wait_for_pending_emails()
