"""FeatureToggle dataclass — read-only switches for optional stages."""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class FeatureToggle:
    feature_key: str
    enabled: bool = False
    config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict) -> 'FeatureToggle':
        config = data.get('config') or {}
        if isinstance(config, str):
            try:
                config = json.loads(config)
            except json.JSONDecodeError:
                config = {}
        return cls(feature_key=data['feature_key'],
                   enabled=bool(data.get('enabled')),
                   config=config if isinstance(config, dict) else {})


def find_toggle(toggles: List[FeatureToggle],
                key: str) -> Optional[FeatureToggle]:
    for toggle in toggles:
        if toggle.feature_key == key:
            return toggle
    return None
