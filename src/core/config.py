"""
Application configuration for the Anomaly Scan Engine.

Provides environment-aware settings with conservative defaults. Every detection
spec names the rule it reports under and the table/columns it reads, so new
datasets can be scanned without touching detector code.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ScanConfig(BaseModel):
	"""
	Execution limits for a scan cycle.

	Notes:
	- max_workers: detector categories run concurrently on this many threads.
	- scan_timeout_seconds: overall budget for the detector phase.
	- query_timeout_seconds: budget for a single external dataset query.
	"""

	max_workers: int = Field(4, ge=1)
	scan_timeout_seconds: float = Field(600.0, gt=0.0)
	query_timeout_seconds: float = Field(120.0, gt=0.0)


class MetricSpec(BaseModel):
	"""
	A numeric metric with a statistical baseline.

	The baseline covers the trailing baseline_days; detection looks at the
	trailing detection_days. When exclude_detection_window is set the baseline
	ends where the detection window starts, so values under test never shift
	their own reference.
	"""

	metric: str
	entity_type: str
	period: str = "daily"
	rule: str
	table: str
	id_column: str
	value_column: str
	time_column: str
	baseline_days: int = Field(90, ge=1)
	detection_days: int = Field(7, ge=1)
	exclude_detection_window: bool = True

	@model_validator(mode="after")
	def _check_windows(self) -> "MetricSpec":
		if self.detection_days >= self.baseline_days:
			raise ValueError("detection_days must be shorter than baseline_days")
		return self


class HeuristicSpec(BaseModel):
	"""
	Entity-scoped behavioral heuristic.

	Kinds:
	- action_count: number of actions in the window exceeds the rule threshold.
	- cumulative_value: sum of value_column in the window exceeds the threshold.
	- first_action_latency: first action follows registration by fewer days
	  than the threshold.
	- distinct_values: distinct values of value_column exceed the threshold.
	"""

	kind: Literal["action_count", "cumulative_value", "first_action_latency", "distinct_values"]
	rule: str
	entity_type: str
	table: str
	entity_column: str
	time_column: str
	value_column: Optional[str] = None
	window_days: int = Field(30, ge=1)
	registration_table: Optional[str] = None
	registration_id_column: Optional[str] = None
	registration_time_column: Optional[str] = None

	@model_validator(mode="after")
	def _check_columns(self) -> "HeuristicSpec":
		if self.kind in ("cumulative_value", "distinct_values") and not self.value_column:
			raise ValueError(f"{self.kind} heuristic requires value_column")
		if self.kind == "first_action_latency" and not (
			self.registration_table and self.registration_id_column and self.registration_time_column
		):
			raise ValueError("first_action_latency heuristic requires registration table and columns")
		return self


class HourlyDeviationSpec(BaseModel):
	"""Entity-relative hour-of-day spike detection."""

	rule: str = "unusual_time_patterns"
	entity_type: str = "merchant"
	table: str = "orders"
	entity_column: str = "merchant_id"
	time_column: str = "order_date"
	window_days: int = Field(30, ge=1)
	unusual_hour_start: int = Field(0, ge=0, le=23)
	unusual_hour_end: int = Field(6, ge=0, le=23)


class RapidSequenceSpec(BaseModel):
	"""Bursts of events between the same actor/counterparty pair."""

	rule: str = "rapid_sequence_activity"
	entity_type: str = "citizen"
	table: str = "orders"
	actor_column: str = "customer_citizen_id"
	counterparty_column: str = "merchant_id"
	time_column: str = "order_date"
	window_days: int = Field(7, ge=1)
	max_gap_seconds: float = Field(60.0, gt=0.0)


class TemporalConfig(BaseModel):
	hourly: HourlyDeviationSpec = HourlyDeviationSpec()
	rapid_sequence: RapidSequenceSpec = RapidSequenceSpec()


class ClusterSpec(BaseModel):
	"""
	Entities sharing an identifying attribute (e.g., a street address).

	The address rule threshold bounds the member count; the shared-contact
	rule applies a lower threshold to groups whose members all share one
	contact_column value.
	"""

	rule: str = "address_clustering_anomaly"
	shared_contact_rule: str = "shared_contact_clustering"
	entity_type: str = "citizen"
	table: str = "citizens"
	id_column: str = "citizen_id"
	group_columns: List[str] = Field(default_factory=lambda: ["street_address", "city"])
	contact_column: Optional[str] = "email"
	extra_contact_columns: List[str] = Field(default_factory=lambda: ["phone"])
	status_column: Optional[str] = "status"
	active_value: str = "active"


class RelationshipSpec(BaseModel):
	"""
	Actor/counterparty transaction relationships.

	Self-dealing compares the actor with the counterparty's owner; bilateral
	volume compares pair counts against the rule threshold and pair totals
	against value_threshold.
	"""

	self_dealing_rule: str = "self_dealing_transactions"
	volume_rule: str = "merchant_customer_anomaly"
	entity_type: str = "merchant"
	table: str = "orders"
	actor_column: str = "customer_citizen_id"
	counterparty_column: str = "merchant_id"
	time_column: str = "order_date"
	amount_column: str = "total_amount"
	owner_table: str = "merchants"
	owner_key_column: str = "merchant_id"
	owner_column: str = "owner_citizen_id"
	window_days: int = Field(90, ge=1)
	value_threshold: float = Field(10000.0, ge=0.0)


class NetworkConfig(BaseModel):
	clustering: ClusterSpec = ClusterSpec()
	relationships: RelationshipSpec = RelationshipSpec()


class AlertThreshold(BaseModel):
	"""
	KPI-style alert: raised when the counted value exceeds threshold.

	kpi selects the dimension ("total", "severity", "entity_type", "status",
	"rule"); key selects the bucket within it (ignored for "total").
	"""

	name: str
	kpi: Literal["total", "severity", "entity_type", "status", "rule"]
	key: Optional[str] = None
	threshold: int = Field(..., ge=0)
	level: Literal["low", "medium", "high", "critical"] = "high"


class ReportingConfig(BaseModel):
	window_days: int = Field(7, ge=1)
	top_rules_limit: int = Field(10, ge=1)
	alerts: List[AlertThreshold] = Field(
		default_factory=lambda: [
			AlertThreshold(
				name="critical_anomaly_volume", kpi="severity", key="critical", threshold=5, level="critical"
			),
			AlertThreshold(name="high_anomaly_volume", kpi="severity", key="high", threshold=25, level="high"),
			AlertThreshold(name="pending_backlog", kpi="status", key="pending", threshold=100, level="medium"),
		]
	)


def _default_metrics() -> List[MetricSpec]:
	return [
		MetricSpec(
			metric="transaction_amount",
			entity_type="order",
			period="daily",
			rule="transaction_amount_outlier",
			table="orders",
			id_column="order_id",
			value_column="total_amount",
			time_column="order_date",
			baseline_days=90,
			detection_days=7,
		),
		MetricSpec(
			metric="permit_cost",
			entity_type="permit",
			period="monthly",
			rule="permit_cost_outlier",
			table="permit_applications",
			id_column="permit_id",
			value_column="estimated_cost",
			time_column="submitted_date",
			baseline_days=365,
			detection_days=30,
		),
	]


def _default_heuristics() -> List[HeuristicSpec]:
	return [
		HeuristicSpec(
			kind="action_count",
			rule="excessive_permit_applications",
			entity_type="citizen",
			table="permit_applications",
			entity_column="citizen_id",
			time_column="submitted_date",
			window_days=30,
		),
		HeuristicSpec(
			kind="cumulative_value",
			rule="excessive_permit_value",
			entity_type="citizen",
			table="permit_applications",
			entity_column="citizen_id",
			time_column="submitted_date",
			value_column="estimated_cost",
			window_days=30,
		),
		HeuristicSpec(
			kind="first_action_latency",
			rule="suspicious_voting_behavior",
			entity_type="citizen",
			table="voting_records",
			entity_column="citizen_id",
			time_column="election_date",
			window_days=730,
			registration_table="citizens",
			registration_id_column="citizen_id",
			registration_time_column="registered_date",
		),
		HeuristicSpec(
			kind="distinct_values",
			rule="voting_method_diversity",
			entity_type="citizen",
			table="voting_records",
			entity_column="citizen_id",
			time_column="election_date",
			value_column="vote_method",
			window_days=730,
		),
	]


class BaselineConfig(BaseModel):
	metrics: List[MetricSpec] = Field(default_factory=_default_metrics)


class BehavioralConfig(BaseModel):
	heuristics: List[HeuristicSpec] = Field(default_factory=_default_heuristics)


class Config(BaseSettings):
	"""
	Global configuration with environment overrides.
	"""

	model_config = SettingsConfigDict(
		env_prefix="ANOMALY_",
		env_file=".env",
		env_nested_delimiter="__",
		extra="ignore",
	)

	log_level: str = Field("INFO", description="Default logging level")
	logs_dir: Path = Field(Path("logs"), description="Directory for log files")
	database_url: str = Field("sqlite:///anomaly_engine.db", description="Anomaly store database URL")
	dataset_dir: Path = Field(Path("data"), description="Directory of CSV/JSON tables to scan")

	scan: ScanConfig = ScanConfig()
	baselines: BaselineConfig = BaselineConfig()
	behavioral: BehavioralConfig = BehavioralConfig()
	temporal: TemporalConfig = TemporalConfig()
	network: NetworkConfig = NetworkConfig()
	reporting: ReportingConfig = ReportingConfig()

	def model_post_init(self, __context: object) -> None:
		self.logs_dir.mkdir(parents=True, exist_ok=True)


config = Config()
