"""Message queues: SQS, Pub/Sub and Service Bus.

Time-based settings (retention, visibility, deduplication window) are given in
seconds and measured in ticks, one tick being one second of simulated time.
"""

from __future__ import annotations

import hashlib
import itertools
import logging
from collections import OrderedDict
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Tuple

from cloudfall.config import Provider, ServiceType, is_number
from cloudfall.request import Request, RequestStatus
from cloudfall.variants.base import ProviderProfile, ServiceVariant

logger = logging.getLogger(__name__)

QUEUE_TYPES = ("standard", "fifo")
DEDUPLICATION_SCOPES = ("queue", "messageGroup")
THROUGHPUT_LIMITS = ("perQueue", "perMessageGroupId")
# Sends per tick for one message group when FIFO throughput is per group
FIFO_GROUP_THROUGHPUT = 300
OPERATION_FACTORS = {
	"send": 1.0,
	"receive": 1.2,
	"delete": 0.8,
	"change_visibility": 0.9,
	"purge": 1.0,
}


def _profile(provider: Provider, product: str, standard_rate: float, fifo_rate: float) -> ProviderProfile:
	return ProviderProfile(
		provider=provider,
		product=product,
		capacity=3000,
		base_cost=0.0004,
		base_latency_ms=10,
		latency_multiplier=0.8,
		degradation_threshold=0.9,
		failure_threshold=2.0,
		# $ per million requests
		params=MappingProxyType({"standard_rate": standard_rate, "fifo_rate": fifo_rate}),
	)


PROFILES = {
	Provider.AWS: _profile(Provider.AWS, "SQS", 0.40, 0.50),
	Provider.GCP: _profile(Provider.GCP, "Pub/Sub", 0.40, 0.40),
	Provider.AZURE: _profile(Provider.AZURE, "Service Bus", 0.05, 0.05),
}


@dataclass
class Message:
	id: str
	body: str
	sent_tick: int
	group_id: Optional[str] = None
	deduplication_id: Optional[str] = None
	sequence: int = 0
	receive_count: int = 0
	receipt_handle: Optional[str] = None
	invisible_until: int = -1


class QueueVariant(ServiceVariant):
	"""Queue with visibility timeouts, FIFO groups, deduplication and a dead-letter store.

	Requests choose an operation with the ``queue_op`` attribute
	(send, receive, delete, change_visibility, purge; default send).
	FIFO sends need a message group, taken from ``message_group`` or, when
	``group_by`` is set, from that request field (e.g. ``client_ip``).
	Sends larger than ``max_message_size`` bytes are rejected. With
	``fifo_throughput_limit: perMessageGroupId`` each group may send at most
	``FIFO_GROUP_THROUGHPUT`` messages per tick.
	"""

	service_type = ServiceType.QUEUE
	PARAM_DEFAULTS = MappingProxyType({
		"queue_type": "standard",
		"content_based_deduplication": False,
		"deduplication_scope": "queue",
		"fifo_throughput_limit": "perQueue",
		"high_throughput_fifo": False,
		"group_by": None,
		"message_retention_seconds": 345600,
		"max_message_size": 262144,
		"visibility_timeout": 30,
		"receive_wait_time": 0,
		"max_batch_size": 10,
		"deduplication_window": 300,
		"dead_letter_queue": {},
		"encryption": {},
	})

	@classmethod
	def validate_params(cls, params: Dict[str, Any], profile: ProviderProfile) -> List[str]:
		errors = super().validate_params(params, profile)
		queue_type = params.get("queue_type")
		if queue_type not in QUEUE_TYPES:
			errors.append("queue_type must be standard or fifo")
		checks = (
			("message_retention_seconds", 60, 1209600),
			("visibility_timeout", 0, 43200),
			("max_message_size", 1024, 262144),
			("receive_wait_time", 0, 20),
			("max_batch_size", 1, 10),
		)
		for key, low, high in checks:
			value = params.get(key)
			if not isinstance(value, (int, float)) or not low <= value <= high:
				errors.append(f"{key} must be between {low} and {high}")
		if queue_type == "fifo":
			if params.get("deduplication_scope") not in DEDUPLICATION_SCOPES:
				errors.append("invalid deduplication_scope for FIFO queue")
			if params.get("fifo_throughput_limit") not in THROUGHPUT_LIMITS:
				errors.append("invalid fifo_throughput_limit")
		dlq = params.get("dead_letter_queue") or {}
		max_receives = dlq.get("max_receive_count", 3)
		if dlq.get("enabled") and (not is_number(max_receives) or max_receives < 1):
			errors.append("dead_letter_queue.max_receive_count must be a number of at least 1")
		if params.get("group_by") is not None and not isinstance(params["group_by"], str):
			errors.append("group_by must name a request field")
		return errors

	def _setup(self) -> None:
		p = self.params
		self.fifo = p["queue_type"] == "fifo"
		if self.fifo and not self.capacity_overridden:
			self.capacity = 9000.0 if p["high_throughput_fifo"] else 300.0
		dlq = p["dead_letter_queue"] or {}
		self.dlq_enabled = bool(dlq.get("enabled"))
		self.max_receive_count = int(dlq.get("max_receive_count", 3))
		self.group_limit = (
			FIFO_GROUP_THROUGHPUT if self.fifo and p["fifo_throughput_limit"] == "perMessageGroupId" else None
		)
		self.tick_group_sends: Dict[str, int] = {}
		encryption = p["encryption"] or {}
		self.encrypted = bool(encryption.get("enabled"))
		self.custom_kms_key = bool(encryption.get("kms_key_id"))

		self.messages: "OrderedDict[str, Message]" = OrderedDict()
		self.in_flight: Dict[str, str] = {}
		self.dead_letters: "OrderedDict[str, Message]" = OrderedDict()
		self.dedup_seen: Dict[str, int] = {}
		self.group_sequences: Dict[str, int] = {}
		self._ids = itertools.count(1)
		self.counters = {
			"sent": 0, "received": 0, "deleted": 0, "rejected": 0,
			"oversize": 0, "throttled": 0, "duplicates": 0, "expired": 0,
		}
		self.tick_operations = 0

	# ------------------------------------------------------------------ operations

	def _visible(self, message: Message) -> bool:
		return message.receipt_handle is None and self.tick >= message.invisible_until

	def _deduplication_key(self, body: str, group_id: Optional[str], explicit: Optional[str]) -> str:
		dedup = explicit
		if dedup is None and self.params["content_based_deduplication"]:
			dedup = hashlib.sha256(body.encode()).hexdigest()
		if dedup is None:
			dedup = f"dedup-{next(self._ids)}"
		if self.params["deduplication_scope"] == "messageGroup":
			return f"{group_id}:{dedup}"
		return dedup

	def send(
		self,
		body: str,
		group_id: Optional[str] = None,
		deduplication_id: Optional[str] = None,
		size_bytes: Optional[int] = None,
	) -> Optional[str]:
		"""Enqueue a message; ``None`` when the send is rejected, throttled or deduplicated."""
		size = len(body.encode()) if size_bytes is None else size_bytes
		if size > self.params["max_message_size"]:
			self.counters["rejected"] += 1
			self.counters["oversize"] += 1
			return None
		message = Message(id=f"msg-{next(self._ids)}", body=body, sent_tick=self.tick)
		if self.fifo:
			if not group_id:
				self.counters["rejected"] += 1
				return None
			if self.group_limit is not None:
				if self.tick_group_sends.get(group_id, 0) >= self.group_limit:
					self.counters["throttled"] += 1
					return None
				self.tick_group_sends[group_id] = self.tick_group_sends.get(group_id, 0) + 1
			key = self._deduplication_key(body, group_id, deduplication_id)
			if key in self.dedup_seen:
				self.counters["duplicates"] += 1
				return None
			self.dedup_seen[key] = self.tick
			sequence = self.group_sequences.get(group_id, 0) + 1
			self.group_sequences[group_id] = sequence
			message.group_id = group_id
			message.deduplication_id = key
			message.sequence = sequence
		self.messages[message.id] = message
		self.counters["sent"] += 1
		return message.id

	def receive(self, max_messages: int = 1) -> List[Message]:
		"""Hand out visible messages; FIFO groups deliver in sequence order, one batch per group."""
		limit = min(max_messages, self.params["max_batch_size"])
		candidates = [m for m in self.messages.values() if self._visible(m)]
		if self.fifo:
			busy_groups = {
				self.messages[mid].group_id for mid in self.in_flight.values() if mid in self.messages
			}
			candidates = sorted(
				(m for m in candidates if m.group_id not in busy_groups),
				key=lambda m: (m.group_id, m.sequence),
			)
		received = candidates[:limit]
		for message in received:
			message.receive_count += 1
			message.receipt_handle = f"rh-{next(self._ids)}"
			message.invisible_until = self.tick + int(self.params["visibility_timeout"])
			self.in_flight[message.receipt_handle] = message.id
			self.counters["received"] += 1
		return received

	def delete(self, receipt_handle: Optional[str]) -> bool:
		message_id = self.in_flight.pop(receipt_handle, None) if receipt_handle else None
		if message_id is None:
			return False
		self.messages.pop(message_id, None)
		self.counters["deleted"] += 1
		return True

	def change_visibility(self, receipt_handle: Optional[str], timeout: int) -> bool:
		message_id = self.in_flight.get(receipt_handle) if receipt_handle else None
		if message_id is None or message_id not in self.messages:
			return False
		self.messages[message_id].invisible_until = self.tick + int(timeout)
		return True

	def purge(self) -> None:
		self.messages.clear()
		self.in_flight.clear()
		self.group_sequences.clear()

	# ------------------------------------------------------------------ housekeeping

	def _begin_tick(self) -> None:
		self.tick_operations = 0
		self.tick_group_sends.clear()
		retention = self.params["message_retention_seconds"]
		for message_id in [m.id for m in self.messages.values() if self.tick - m.sent_tick > retention]:
			self._forget(message_id)
			self.counters["expired"] += 1
		for message_id in [m.id for m in self.dead_letters.values() if self.tick - m.sent_tick > retention]:
			del self.dead_letters[message_id]
			self.counters["expired"] += 1

		# Visibility timeouts that lapsed return their message to the queue
		for handle, message_id in list(self.in_flight.items()):
			message = self.messages.get(message_id)
			if message is None:
				del self.in_flight[handle]
			elif self.tick >= message.invisible_until:
				del self.in_flight[handle]
				message.receipt_handle = None
				if self.dlq_enabled and message.receive_count >= self.max_receive_count:
					self.dead_letters[message_id] = self.messages.pop(message_id)
					logger.debug(f"{self.id}: {message_id} moved to dead-letter queue")

		window = self.params["deduplication_window"]
		self.dedup_seen = {k: t for k, t in self.dedup_seen.items() if self.tick - t < window}

	def _forget(self, message_id: str) -> None:
		message = self.messages.pop(message_id, None)
		if message is not None and message.receipt_handle:
			self.in_flight.pop(message.receipt_handle, None)

	# ------------------------------------------------------------------ tick

	def _group_for(self, request: Request) -> Optional[str]:
		group = request.attribute("message_group")
		if group is None and self.params["group_by"]:
			group = getattr(request, self.params["group_by"], None) or None
		return group

	def _handle(self, request: Request, latency_ms: float) -> Tuple[float, RequestStatus]:
		op = request.attribute("queue_op", "send")
		if op not in OPERATION_FACTORS:
			op = "send"
		if op == "send":
			self.send(
				request.body or request.path,
				group_id=self._group_for(request),
				deduplication_id=request.attribute("deduplication_id"),
				size_bytes=int(request.size_kb * 1024) if request.size_kb else None,
			)
		elif op == "receive":
			self.receive(int(request.attribute("max_messages", "1")))
		elif op == "delete":
			self.delete(request.attribute("receipt_handle"))
		elif op == "change_visibility":
			self.change_visibility(
				request.attribute("receipt_handle"),
				int(request.attribute("visibility_timeout", str(self.params["visibility_timeout"]))),
			)
		else:
			self.purge()
		self.tick_operations += 1

		latency = latency_ms * OPERATION_FACTORS[op]
		if self.fifo:
			latency *= 1.1
		if self.encrypted:
			latency *= 1.05
		if op == "receive" and self.params["receive_wait_time"] > 0:
			latency *= 0.9
		return latency, RequestStatus.PROCESSED

	def _cost_addons(self) -> Dict[str, float]:
		rate = self.params["fifo_rate" if self.fifo else "standard_rate"] / 1_000_000
		ops = self.tick_operations
		terms = {"requests": ops * rate, "data_transfer": ops * 0.000001}
		if self.encrypted and self.custom_kms_key:
			terms["kms"] = ops * 0.03 / 10000
		return terms

	def _extension_summary(self) -> Dict[str, Any]:
		return {
			"queue_type": self.params["queue_type"],
			"visible": sum(1 for m in self.messages.values() if self._visible(m)),
			"in_flight": len(self.in_flight),
			"dead_letters": len(self.dead_letters),
			"groups": len(self.group_sequences),
			**self.counters,
		}
