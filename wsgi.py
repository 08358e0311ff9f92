from syncbridge import create_app

app = create_app()

# gunicorn -w 1 wsgi:app
# Keep a single worker while SYNC_SCHEDULER_ENABLED is on; each worker starts its own scheduler
