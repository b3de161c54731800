"""
Tests for the definition loader.

Covers:
- loading the bundled travel-request set, by path and by bare name
- parse defaults
- checksum determinism
- structural validation of templates, lifecycles, and gates
- load failures: missing file, empty file, invalid set
"""

import pytest
import yaml

from governance_config.loader import (
    DEFAULT_SETS_DIR,
    compute_checksum,
    load_definition_set,
    parse_definition_set,
    validate_definition_set,
)
from governance_kernel.exceptions import DefinitionValidationError
from tests.factories import approval_template, gated_lifecycle, purchase_set


def _errors(data):
    return validate_definition_set(parse_definition_set(data))


class TestLoadBundledSet:
    def test_travel_request_set(self):
        definitions = load_definition_set(DEFAULT_SETS_DIR / "travel_request.yaml")

        assert definitions.set_id == "travel-request"
        assert definitions.version == 1
        assert len(definitions.checksum) == 64
        (lifecycle,) = definitions.lifecycles
        assert lifecycle.entity_name == "travel_request"
        assert [s.code for s in lifecycle.states] == [
            "draft", "submitted", "approved", "rejected", "closed",
        ]
        (template,) = definitions.approval_templates
        assert [s.mode for s in template.stages] == ["all", "any"]
        assert len(template.routing_rules) == 4

    @pytest.mark.parametrize("name", ["travel_request", "travel_request.yaml"])
    def test_bare_name_resolved_in_sets_dir(self, name):
        assert load_definition_set(name).set_id == "travel-request"

    def test_load_logged(self, captured_logs):
        load_definition_set("travel_request")
        loaded = [r for r in captured_logs() if r["message"] == "definition_set_loaded"]
        assert loaded[0]["set_id"] == "travel-request"


class TestParsing:
    def test_defaults(self):
        definitions = parse_definition_set({
            "set_id": "minimal",
            "approval_templates": [{
                "code": "t",
                "stages": [{"stage_no": 1}],
                "routing_rules": [{"assign_to": {"principal_id": "a"}}],
            }],
            "lifecycles": [{
                "code": "lc",
                "entity_name": "thing",
                "states": [{"code": "a"}, {"code": "b"}],
                "transitions": [{"operation_code": "GO", "from": "a", "to": "b"}],
            }],
        })

        assert definitions.version == 1
        (template,) = definitions.approval_templates
        assert template.name == "t"
        assert template.stages[0].mode == "all"
        assert template.stages[0].sla_hours is None
        rule = template.routing_rules[0]
        assert (rule.priority, rule.stage_no, rule.is_fallback) == (100, None, False)
        (lifecycle,) = definitions.lifecycles
        assert [s.sort_order for s in lifecycle.states] == [0, 1]
        assert lifecycle.transitions[0].is_active is True
        assert lifecycle.transitions[0].gates == ()

    def test_gate_fields(self):
        lifecycle = parse_definition_set(purchase_set(
            required_operations=["po.approve"],
            threshold_rules={"field": "amount", "operator": "gt", "value": 10},
        )).lifecycles[0]
        gate = lifecycle.transitions[1].gates[0]

        assert gate.required_operations == ("po.approve",)
        assert gate.approval_template == "po_approval"
        assert gate.threshold_rules["operator"] == "gt"

    def test_missing_required_key(self):
        with pytest.raises(KeyError):
            parse_definition_set({"lifecycles": []})


class TestChecksum:
    def test_deterministic(self):
        assert compute_checksum({"a": 1, "b": [1, 2]}) == compute_checksum({"b": [1, 2], "a": 1})

    def test_changes_with_content(self):
        assert compute_checksum({"a": 1}) != compute_checksum({"a": 2})

    def test_parsed_set_carries_checksum(self):
        data = purchase_set()
        assert parse_definition_set(data).checksum == compute_checksum(data)


class TestTemplateValidation:
    def test_valid_set(self):
        assert _errors(purchase_set()) == []

    @pytest.mark.parametrize("stages,fragment", [
        ([], "has no stages"),
        ([{"stage_no": 1}, {"stage_no": 1}], "repeats stage_no 1"),
        ([{"stage_no": 0}], "must be >= 1"),
        ([{"stage_no": 1, "mode": "serial"}], "unknown mode 'serial'"),
        ([{"stage_no": 1, "mode": "quorum", "quorum": {"type": "weighted", "value": 2}}],
         "unknown quorum type 'weighted'"),
        ([{"stage_no": 1, "mode": "quorum", "quorum": {"type": "count", "value": 0}}],
         "quorum value must be positive"),
        ([{"stage_no": 1, "mode": "quorum", "quorum": {"type": "percentage", "value": 150}}],
         "quorum percentage exceeds 100"),
        ([{"stage_no": 1, "sla_hours": 0}], "sla_hours must be positive"),
    ])
    def test_stage_errors(self, stages, fragment):
        errors = _errors(purchase_set(approval_template(stages=stages)))
        assert any(fragment in e for e in errors), errors

    def test_rule_targets_unknown_stage(self):
        template = approval_template(routing_rules=[
            {"stage_no": 3, "assign_to": {"principal_id": "a"}},
        ])
        errors = _errors(purchase_set(template))
        assert errors == ["approval template 'po_approval' routing rule #1 targets unknown stage 3"]

    def test_rule_with_empty_assign_to(self):
        template = approval_template(routing_rules=[{"assign_to": {}}])
        assert any("empty assign_to" in e for e in _errors(purchase_set(template)))

    def test_rule_with_bad_condition(self):
        template = approval_template(routing_rules=[{
            "conditions": {"field": "amount", "operator": "approximately", "value": 1},
            "assign_to": {"principal_id": "a"},
        }])
        errors = _errors(purchase_set(template))
        assert any("routing rule #1" in e and "approximately" in e for e in errors)

    def test_duplicate_template_codes(self):
        data = purchase_set()
        data["approval_templates"].append(approval_template())
        assert "duplicate approval template code 'po_approval'" in _errors(data)


class TestLifecycleValidation:
    def _with_lifecycle(self, **changes):
        lifecycle = gated_lifecycle()
        lifecycle.update(changes)
        return {
            "set_id": "s",
            "approval_templates": [approval_template()],
            "lifecycles": [lifecycle],
        }

    def test_no_states(self):
        errors = _errors(self._with_lifecycle(states=[], transitions=[]))
        assert "lifecycle 'purchase_order_lifecycle' has no states" in errors

    def test_duplicate_state(self):
        states = gated_lifecycle()["states"] + [{"code": "draft"}]
        errors = _errors(self._with_lifecycle(states=states))
        assert any("repeats state 'draft'" in e for e in errors)

    def test_duplicate_transition(self):
        transitions = gated_lifecycle()["transitions"] + [
            {"operation_code": "SUBMIT", "from": "draft", "to": "canceled"},
        ]
        errors = _errors(self._with_lifecycle(transitions=transitions))
        assert any("two transitions from 'draft' via 'SUBMIT'" in e for e in errors)

    def test_unknown_states(self):
        errors = _errors(self._with_lifecycle(transitions=[
            {"operation_code": "GO", "from": "nowhere", "to": "elsewhere"},
        ]))
        assert any("starts at unknown state" in e for e in errors)
        assert any("targets unknown state 'elsewhere'" in e for e in errors)

    def test_transition_out_of_terminal_state(self):
        transitions = gated_lifecycle()["transitions"] + [
            {"operation_code": "REOPEN", "from": "canceled", "to": "draft"},
        ]
        errors = _errors(self._with_lifecycle(transitions=transitions))
        assert any("leaves a terminal state" in e for e in errors)

    def test_gate_references_unknown_template(self):
        data = self._with_lifecycle()
        data["approval_templates"] = []
        errors = _errors(data)
        assert any("unknown approval template 'po_approval'" in e for e in errors)

    def test_empty_gate(self):
        errors = _errors(self._with_lifecycle(transitions=[
            {"operation_code": "GO", "from": "draft", "to": "pending", "gates": [{}]},
        ]))
        assert any("neither required_operations nor approval" in e for e in errors)

    def test_bad_threshold_operator(self):
        data = purchase_set(threshold_rules={"field": "amount", "operator": "huge", "value": 1})
        errors = _errors(data)
        assert any("gate threshold_rules" in e and "huge" in e for e in errors)


class TestLoadFailures:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_definition_set(tmp_path / "absent.yaml")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        with pytest.raises(KeyError):
            load_definition_set(path)

    def test_invalid_set_raises_with_all_errors(self, tmp_path):
        data = purchase_set(approval_template(stages=[{"stage_no": 1, "mode": "serial"}]))
        data["lifecycles"][0]["states"] = []
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump(data))

        with pytest.raises(DefinitionValidationError) as exc_info:
            load_definition_set(path)

        assert len(exc_info.value.errors) >= 2
        assert exc_info.value.code == "DEFINITION_VALIDATION_ERROR"
        assert "Definition validation failed" in str(exc_info.value)
