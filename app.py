from __future__ import annotations

import os
import logging
from pathlib import Path

from cloudfall.api import create_app
from cloudfall.config import load_layout, load_settings
from cloudfall.engine import SimulationEngine
from cloudfall.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_LAYOUT_PATH = Path(__file__).parent / "deploy" / "starter-layout.yaml"


def seed_layout(engine: SimulationEngine, path: str) -> int:
    """Deploy the starter services from ``path``. Returns how many were deployed.

    Safe to call more than once: nothing is deployed when services already exist.
    """
    if len(engine.registry):
        return 0

    deployed = 0
    for config in load_layout(path):
        try:
            engine.deploy_service(config)
            deployed += 1
        except ConfigurationError as e:
            logger.warning(f"Skipping starter service {config.name or config.service_type}: {e}")
    logger.info(f"Seeded {deployed} starter services from {path}")
    return deployed


def build_app():
	"""Build the Flask app around one engine, optionally seeded with a starter layout."""
	logging.basicConfig(level=os.getenv("CLOUDFALL_LOG_LEVEL", "INFO"))
	engine = SimulationEngine(load_settings())

	if os.getenv("CLOUDFALL_SEED_LAYOUT", "0").lower() in ("1", "true", "yes"):
		layout_path = os.getenv("CLOUDFALL_LAYOUT_PATH", str(DEFAULT_LAYOUT_PATH))
		if os.path.exists(layout_path):
			seed_layout(engine, layout_path)
		else:
			logger.warning(f"Starter layout {layout_path} not found, starting empty")

	return create_app(engine)


# Build app at module level (for gunicorn)
app = build_app()


if __name__ == "__main__":
	app.run(host="0.0.0.0", port=8080)
