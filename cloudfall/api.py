from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Flask, jsonify, request

from cloudfall.engine import SimulationEngine
from cloudfall.errors import ConfigurationError, GameOverError, UnknownServiceError

logger = logging.getLogger(__name__)


def create_app(engine: SimulationEngine) -> Flask:
	app = Flask(__name__)
	# Single in-process engine shared by every endpoint
	app.config['cloudfall_engine'] = engine

	def game_over_response(command: str) -> Any:
		reason = engine.metrics.reason.value if engine.metrics.reason else "over"
		return jsonify({"error": f"cannot {command}: game over", "reason": reason}), 409

	@app.post("/start")
	def start() -> Any:
		if engine.is_over:
			return game_over_response("start")
		started = engine.start()
		return jsonify({"status": "started" if started else "already running", "tick": engine.tick_count})

	@app.post("/pause")
	def pause() -> Any:
		paused = engine.pause()
		return jsonify({"status": "paused" if paused else "not running", "tick": engine.tick_count})

	@app.post("/reset")
	def reset() -> Any:
		snap = engine.reset()
		return jsonify({"status": "reset", "snapshot": snap.to_dict()})

	@app.post("/tick")
	def tick() -> Any:
		if engine.is_over:
			return game_over_response("tick")
		body: Dict[str, Any] = request.get_json(force=True, silent=True) or {}
		try:
			count = int(body.get("count", 1))
		except (TypeError, ValueError):
			return jsonify({"error": "count must be an integer"}), 400
		if count < 1:
			return jsonify({"error": "count must be >= 1"}), 400

		ticked = 0
		for _ in range(count):
			if engine.is_over:
				break
			if engine.tick() is not None:
				ticked += 1
		return jsonify({"ticked": ticked, "snapshot": engine.snapshot().to_dict()})

	@app.get("/services")
	def list_services() -> Any:
		return jsonify({"services": engine.snapshot().to_dict()["services"]})

	@app.post("/services")
	def deploy_service() -> Any:
		body = request.get_json(force=True, silent=True)
		if not isinstance(body, dict):
			return jsonify({"error": "expected a JSON object", "violations": ["body must be an object"]}), 400
		try:
			service = engine.deploy_service(body)
		except ConfigurationError as e:
			logger.warning(f"Rejected deploy of {body.get('provider')}/{body.get('type', body.get('service_type'))}: {e}")
			return jsonify({"error": "invalid service configuration", "violations": e.violations}), 400
		except GameOverError:
			return game_over_response("deploy service")
		return jsonify(service), 201

	@app.get("/services/<service_id>")
	def get_service(service_id: str) -> Any:
		try:
			return jsonify(engine.get_service(service_id))
		except UnknownServiceError:
			return jsonify({"error": f"unknown service {service_id}"}), 404

	@app.delete("/services/<service_id>")
	def remove_service(service_id: str) -> Any:
		try:
			removed = engine.remove_service(service_id)
		except GameOverError:
			return game_over_response("remove service")
		if not removed:
			return jsonify({"error": f"unknown service {service_id}"}), 404
		return jsonify({"status": "removed", "id": service_id})

	@app.post("/spike")
	def spike() -> Any:
		body: Dict[str, Any] = request.get_json(force=True, silent=True) or {}
		try:
			multiplier = float(body.get("multiplier", 5.0))
			duration_s = float(body.get("duration_s", 10.0))
		except (TypeError, ValueError):
			return jsonify({"error": "multiplier and duration_s must be numbers"}), 400
		try:
			engine.trigger_spike(multiplier, duration_s)
		except ConfigurationError as e:
			return jsonify({"error": "invalid spike", "violations": e.violations}), 400
		except GameOverError:
			return game_over_response("trigger spike")
		return jsonify({"status": "ok", "multiplier": multiplier, "duration_s": duration_s})

	@app.get("/snapshot")
	def snapshot() -> Any:
		return jsonify(engine.snapshot().to_dict())

	@app.get("/status")
	def status() -> Any:
		return jsonify(engine.status())

	@app.get("/events")
	def events() -> Any:
		try:
			limit = int(request.args.get("limit", 100))
			since = request.args.get("since")
			since_id = int(since) if since is not None else None
		except ValueError:
			return jsonify({"error": "limit and since must be integers"}), 400
		return jsonify({"events": [e.to_dict() for e in engine.bus.recent(limit=limit, since_id=since_id)]})

	return app
