from typing import Any, Dict, Sequence
from prometheus_client import CollectorRegistry, Counter, Gauge


class MetricsManager:
    """Process-wide registry for console metrics, exported in Prometheus format."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(MetricsManager, cls).__new__(cls)
            cls._instance.metrics: Dict[str, Any] = {}
            cls._instance.prom_registry = CollectorRegistry()
        return cls._instance

    def counter(self, name: str, description: str = "", labelnames: Sequence[str] = ()) -> Counter:
        if name not in self.metrics:
            self.metrics[name] = Counter(
                name,
                description or f"Counter for {name}",
                labelnames=tuple(labelnames),
                registry=self.prom_registry,
            )
        return self.metrics[name]

    def gauge(self, name: str, description: str = "", labelnames: Sequence[str] = ()) -> Gauge:
        if name not in self.metrics:
            self.metrics[name] = Gauge(
                name,
                description or f"Gauge for {name}",
                labelnames=tuple(labelnames),
                registry=self.prom_registry,
            )
        return self.metrics[name]

    def get_all(self) -> Dict[str, float]:
        """Flatten every sample into {sample_name{labels}: value}."""
        res: Dict[str, float] = {}
        for family in self.prom_registry.collect():
            for sample in family.samples:
                if sample.name.endswith("_created"):
                    continue
                labels = ",".join(f"{k}={v}" for k, v in sorted(sample.labels.items()))
                key = f"{sample.name}{{{labels}}}" if labels else sample.name
                res[key] = sample.value
        return res

    def sample(self, name: str, **labels: str) -> float:
        """Current value of a single sample, 0.0 if it was never touched."""
        value = self.prom_registry.get_sample_value(name, labels or None)
        return value if value is not None else 0.0
