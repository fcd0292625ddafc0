"""
Tests for registry loading and validation
"""

import copy

import pytest
import yaml

from phasegate.error_handling import ConfigurationError
from phasegate.registry import (
    TERMINAL,
    bundled_registry_names,
    load_bundled_registry,
    load_registry,
    parse_registry,
)


class TestPhaseRegistry:

    def test_parses_phases_in_order(self, registry):
        assert registry.name == "test_registry"
        assert len(registry) == 3
        assert [p.name for p in registry.phases] == ["Screen", "Assess", "Brief"]

    def test_definition_for(self, registry):
        phase = registry.definition_for(1)
        assert phase.pass_threshold == 70
        assert phase.escalate_threshold == 40
        assert [c.id for c in phase.criteria] == ["c1", "c2"]
        assert phase.deliverables == ("idea_card",)

    def test_definition_for_unknown_ordinal(self, registry):
        with pytest.raises(KeyError):
            registry.definition_for(9)

    def test_next_ordinal(self, registry):
        assert registry.next_ordinal(1) == 2
        assert registry.next_ordinal(2) == 3
        assert registry.next_ordinal(3) is TERMINAL

    def test_terminal_ordinal_is_one_past_last(self, registry):
        assert registry.last_ordinal == 3
        assert registry.terminal_ordinal == 4

    def test_flat_structure_is_accepted(self, registry_data):
        registry = parse_registry(registry_data["registry"])
        assert len(registry) == 3


class TestRegistryValidation:
    """Invalid registries fail at load time"""

    def _mutate(self, registry_data, mutate):
        data = copy.deepcopy(registry_data)
        mutate(data["registry"])
        return data

    def test_non_contiguous_ordinals(self, registry_data):
        data = self._mutate(registry_data, lambda r: r["phases"][2].update(ordinal=5))
        with pytest.raises(ConfigurationError, match="contiguous"):
            parse_registry(data)

    def test_duplicate_ordinals(self, registry_data):
        data = self._mutate(registry_data, lambda r: r["phases"][1].update(ordinal=1))
        with pytest.raises(ConfigurationError):
            parse_registry(data)

    @pytest.mark.parametrize("mutate", [
        lambda p: p.update(criteria=[]),
        lambda p: p.update(escalate_threshold=80),
        lambda p: p.update(pass_threshold=120),
        lambda p: p.update(escalate_threshold=-1),
        lambda p: p["criteria"][0].update(weight=0),
        lambda p: p["criteria"][0].update(weight=-2),
        lambda p: p["criteria"][1].update(id="c1"),
        lambda p: p["criteria"][0].update(id="bad id!"),
    ], ids=[
        "no-criteria", "escalate-above-pass", "pass-over-100", "negative-escalate",
        "zero-weight", "negative-weight", "duplicate-criterion", "bad-criterion-id",
    ])
    def test_invalid_phase(self, registry_data, mutate):
        data = self._mutate(registry_data, lambda r: mutate(r["phases"][0]))
        with pytest.raises(ConfigurationError):
            parse_registry(data)

    @pytest.mark.parametrize("field", ["weight", "pass_threshold", "escalate_threshold"])
    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_numbers(self, registry_data, field, value):
        def mutate(phase):
            target = phase["criteria"][0] if field == "weight" else phase
            target[field] = value

        data = self._mutate(registry_data, lambda r: mutate(r["phases"][0]))
        with pytest.raises(ConfigurationError, match=field):
            parse_registry(data)

    def test_non_finite_weight_in_yaml(self, tmp_path, registry_data):
        text = yaml.dump(registry_data).replace("weight: 10", "weight: .nan", 1)
        path = tmp_path / "nan.yaml"
        path.write_text(text)

        with pytest.raises(ConfigurationError, match="weight"):
            load_registry(path)

    def test_equal_thresholds_are_allowed(self, registry_data):
        data = self._mutate(registry_data, lambda r: r["phases"][0].update(escalate_threshold=70))
        assert parse_registry(data).definition_for(1).escalate_threshold == 70

    def test_no_phases(self, registry_data):
        data = self._mutate(registry_data, lambda r: r.update(phases=[]))
        with pytest.raises(ConfigurationError):
            parse_registry(data)

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError):
            parse_registry(["not", "a", "mapping"])


class TestLoadRegistry:

    def test_load_from_file(self, registry_file):
        registry = load_registry(registry_file)
        assert registry.name == "test_registry"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_registry(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("registry: [unclosed")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_registry(path)

    def test_round_trips_through_to_dict(self, registry, tmp_path):
        path = tmp_path / "dumped.yaml"
        path.write_text(yaml.dump(registry.to_dict()))
        assert load_registry(path).to_dict() == registry.to_dict()


class TestBundledRegistries:

    def test_bundled_names(self):
        names = bundled_registry_names()
        assert {"innovation_flywheel", "project_genesis", "quality_gates"} <= set(names)

    @pytest.mark.parametrize("name", ["innovation_flywheel", "project_genesis", "quality_gates"])
    def test_bundled_registry_loads(self, name):
        registry = load_bundled_registry(name)
        assert registry.name == name
        assert len(registry) >= 5
        for phase in registry.phases:
            assert phase.criteria
            assert phase.escalate_threshold <= phase.pass_threshold

    def test_unknown_bundled_registry(self):
        with pytest.raises(ConfigurationError, match="Unknown bundled registry"):
            load_bundled_registry("nope")
