"""Gunicorn configuration. Game state lives in-process, so one worker only."""
import sys

# Gunicorn config variables
bind = "0.0.0.0:8080"
workers = 1
threads = 4
timeout = 120
worker_class = "gthread"
preload_app = False

def post_worker_init(worker):
    """Called just after a worker has initialized the application."""
    try:
        app = worker.wsgi
        engine = app.config.get('cloudfall_engine') if hasattr(app, 'config') else None
        if engine is None:
            print(f"[Worker {worker.pid}] WARNING: No engine found in app.config", file=sys.stderr, flush=True)
            return
        print(
            f"[Worker {worker.pid}] Engine ready: {len(engine.registry)} services, tick={engine.tick_count}",
            file=sys.stderr,
            flush=True,
        )
    except Exception as e:
        print(f"[Worker {worker.pid}] ERROR in post_worker_init: {e}", file=sys.stderr, flush=True)
        import traceback
        traceback.print_exc(file=sys.stderr)
