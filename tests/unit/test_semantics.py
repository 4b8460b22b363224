"""
Unit tests for node execution semantics.
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from process_workflow.core.errors import TriggerNotAllowedError
from process_workflow.core.models import (
    AssignmentNodeConfig,
    ConditionNodeConfig,
    DatalakeSyncNodeConfig,
    ExecutionContext,
    ForkBranch,
    ForkNodeConfig,
    JoinNodeConfig,
    NotificationNodeConfig,
    SetVariableNodeConfig,
    StatusChangeNodeConfig,
    SubProcessNodeConfig,
    TaskNodeConfig,
    TaskOutcome,
    TaskStatus,
    ValidationNodeConfig,
    VariableType,
)
from process_workflow.core.semantics import (
    ConditionEvaluator,
    ForkBranchResolver,
    JoinSynchronizer,
    StatusChangeRule,
    ValidationGate,
    WorkflowVariables,
    coerce_variable,
    datalake_outcome_port,
    datalake_retry_delays,
    evaluate_simple_condition,
    join_expected_branches,
    join_inputs,
    next_edges,
    next_validation_target,
    render_notification,
    resolve_assignment,
    route_task_outcome,
    should_delegate,
)
from process_workflow.core.state_machine import JoinState, ValidationState
from process_workflow.template import TemplateContext


NOW = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


# ==================== Condition ====================

class TestCondition:
    def test_equals_on_builtin_field(self, execution_context):
        """Test equality on a built-in context field routes yes or no."""
        evaluator = ConditionEvaluator(execution_context)
        assert evaluator.route(ConditionNodeConfig(field="priority", value="high")) == "yes"
        assert evaluator.route(ConditionNodeConfig(field="priority", value="low")) == "no"

    def test_custom_field_prefix(self, execution_context):
        """Test the custom: prefix reads a custom field."""
        config = ConditionNodeConfig(field="custom:montant", operator="greater_than", value=1000)
        assert ConditionEvaluator(execution_context).route(config) == "yes"

    def test_custom_prefix_reads_custom_fields_only(self, execution_context):
        """Test the custom: prefix ignores built-in fields."""
        config = ConditionNodeConfig(field="custom:priority", operator="is_empty")
        assert ConditionEvaluator(execution_context).evaluate(config)

    def test_numeric_comparison_of_text(self):
        """Test numeric text is compared as a number."""
        context = ExecutionContext(custom_fields={"montant": "900"})
        config = ConditionNodeConfig(field="montant", operator="less_than", value=1000)
        assert ConditionEvaluator(context).evaluate(config)

    def test_missing_field_is_empty(self, execution_context):
        """Test a missing field evaluates as empty."""
        evaluator = ConditionEvaluator(execution_context)
        assert evaluator.route(ConditionNodeConfig(field="absent", operator="is_empty")) == "yes"
        assert evaluator.route(ConditionNodeConfig(field="absent", operator="greater_than", value=1)) == "no"

    def test_contains(self):
        """Test contains on lists and text."""
        context = ExecutionContext(custom_fields={"tags": ["rh", "urgent"], "titre": "Contrat cadre"})
        evaluator = ConditionEvaluator(context)
        assert evaluator.evaluate(ConditionNodeConfig(field="tags", operator="contains", value="rh"))
        assert evaluator.evaluate(ConditionNodeConfig(field="titre", operator="contains", value="cadre"))
        assert not evaluator.evaluate(ConditionNodeConfig(field="titre", operator="contains", value="devis"))

    def test_workflow_variable_lookup(self):
        """Test conditions can read workflow variables."""
        context = ExecutionContext(variables={"seuil_atteint": True})
        config = ConditionNodeConfig(field="seuil_atteint", value=True)
        assert ConditionEvaluator(context).route(config) == "yes"


# ==================== Fork ====================

class TestFork:
    def test_static_branches_all_active(self, execution_context):
        """Test static branches without conditions are all active."""
        activations = ForkBranchResolver(execution_context).resolve(ForkNodeConfig())
        assert [a.port for a in activations] == ["branch_1", "branch_2"]

    def test_static_branch_conditions(self, execution_context):
        """Test static branch conditions select the active branches."""
        config = ForkNodeConfig(branches=[
            ForkBranch(id="branch_1", name="Urgent", condition="priority == high"),
            ForkBranch(id="branch_2", name="Normal", condition="priority != high"),
            ForkBranch(id="branch_3", name="Toujours"),
        ])
        activations = ForkBranchResolver(execution_context).resolve(config)
        assert [a.branch_id for a in activations] == ["branch_1", "branch_3"]

    def test_unparseable_condition_keeps_branch(self, execution_context):
        """Test empty or unparseable branch conditions keep the branch."""
        assert evaluate_simple_condition("quelque chose", execution_context)
        assert evaluate_simple_condition("", execution_context)
        assert not evaluate_simple_condition("montant > '2000'", execution_context)

    def test_dynamic_branches_follow_selection(self):
        """Test dynamic branches follow the selected sub-processes."""
        context = ExecutionContext(selected_sub_processes=["legal", "finance", "legal", "it"])
        config = ForkNodeConfig(
            branch_mode="dynamic",
            sub_process_ids=["legal", "finance"],
            branch_labels=["Juridique"],
        )

        activations = ForkBranchResolver(context).resolve(config)

        assert [a.port for a in activations] == ["sp_legal", "sp_finance"]
        assert [a.name for a in activations] == ["Juridique", "finance"]
        assert activations[1].sub_process_id == "finance"

    def test_dynamic_without_declared_ids_uses_single_port(self):
        """Test a dynamic fork without declared ids starts branches on one port."""
        context = ExecutionContext(selected_sub_processes=["legal", "finance"])
        activations = ForkBranchResolver(context).resolve(ForkNodeConfig(branch_mode="dynamic"))
        assert {a.port for a in activations} == {"out"}
        assert len(activations) == 2


# ==================== Join ====================

class TestJoin:
    def test_and_waits_for_every_branch(self):
        """Test an AND join fires on the last branch."""
        join = JoinSynchronizer(JoinNodeConfig(), ["branch_1", "branch_2"], node_id="j")

        assert not join.complete("branch_1")
        assert join.state == JoinState.WAITING
        assert join.complete("branch_2")
        assert join.state == JoinState.FIRED

    def test_completion_is_idempotent(self):
        """Test a repeated completion is ignored."""
        join = JoinSynchronizer(JoinNodeConfig(), ["a", "b"])
        join.complete("a")
        assert not join.complete("a")
        assert join.received == {"a"}

    def test_late_completion_is_ignored(self):
        """Test completions after firing are ignored."""
        join = JoinSynchronizer(JoinNodeConfig(join_type="or"), ["a", "b"])
        assert join.complete("a")
        assert not join.complete("b")
        assert join.received == {"a"}
        assert len(join.history) == 1

    def test_unexpected_branch(self):
        """Test a branch the join does not expect is ignored."""
        join = JoinSynchronizer(JoinNodeConfig(join_type="or"), ["a"])
        assert not join.complete("z")
        assert join.state == JoinState.WAITING

    def test_n_of_m(self):
        """Test an N-of-M join fires after the configured count."""
        join = JoinSynchronizer(JoinNodeConfig(join_type="n_of_m", required_count=2), ["a", "b", "c"])
        assert join.required_count == 2
        assert not join.complete("c")
        assert join.complete("a")

    def test_required_branches(self):
        """Test required branch ids must complete before firing."""
        config = JoinNodeConfig(join_type="or", required_branch_ids=["b"])
        join = JoinSynchronizer(config, ["a", "b"])
        assert not join.complete("a")
        assert join.complete("b")

    @pytest.mark.parametrize(
        "action,expected",
        [("continue", JoinState.FIRED), ("fail", JoinState.FAILED), ("notify", JoinState.WAITING)],
    )
    def test_timeout_actions(self, action, expected):
        """Test each join timeout action."""
        join = JoinSynchronizer(JoinNodeConfig(timeout_hours=2, on_timeout_action=action), ["a", "b"], node_id="j")
        join.complete("a", now=NOW)

        assert join.deadline() == NOW + timedelta(hours=2)
        assert join.on_timeout() == expected
        if action == "notify":
            assert join.notifications == ["Join j still waiting: 1/2 branch(es) completed"]

    def test_timeout_after_firing_is_ignored(self):
        """Test a timeout after firing changes nothing."""
        join = JoinSynchronizer(JoinNodeConfig(on_timeout_action="fail"), ["a"])
        join.complete("a")
        assert join.on_timeout() == JoinState.FIRED

    def test_no_deadline_without_timeout(self):
        """Test a join without timeout has no deadline."""
        join = JoinSynchronizer(JoinNodeConfig(), ["a"])
        join.start(NOW)
        assert join.deadline() is None

    def test_join_inputs_from_graph(self, store, start_end):
        """Test join inputs and fork edges are read from the graph."""
        start_id, end_id = start_end
        fork = store.add_node("fork")
        join = store.add_node("join")
        store.add_edge(start_id, fork.id)
        store.add_edge(fork.id, join.id, source_handle="branch_1")
        store.add_edge(fork.id, join.id, source_handle="branch_2")
        store.add_edge(join.id, end_id)

        graph = store.graph
        assert join_inputs(graph, join.id) == ["branch_1", "branch_2"]
        assert [e.target_node_id for e in next_edges(graph, fork.id, "branch_2")] == [join.id]
        assert next_edges(graph, "missing", "out") == []


class TestForkJoinBranches:
    """Tests for matching a join's expectations to the branches its fork started."""

    def _fork_join(self, store, start_end, fork_config):
        start_id, end_id = start_end
        fork = store.add_node("fork", config=fork_config)
        join = store.add_node("join")
        store.add_edge(start_id, fork.id)
        store.add_edge(join.id, end_id)
        return fork, join

    def test_dynamic_fork_through_single_chain(self, store, start_end):
        """Test every selected sub-process is awaited when one chain feeds the join."""
        fork, join = self._fork_join(store, start_end, {"branch_mode": "dynamic"})
        task = store.add_node("task", config={"task_template_ids": ["tpl-review"]})
        store.add_edge(fork.id, task.id)
        store.add_edge(task.id, join.id, source_handle="completed")
        graph = store.graph

        context = ExecutionContext(selected_sub_processes=["legal", "finance"])
        activations = ForkBranchResolver(context).resolve(graph.get_node(fork.id).config)
        expected = join_expected_branches(graph, join.id, fork.id, activations)

        assert join_inputs(graph, join.id) == ["branch_1"]
        assert expected == ["sp_legal", "sp_finance"]

        synchronizer = JoinSynchronizer(JoinNodeConfig(), expected, node_id=join.id)
        assert not synchronizer.complete("sp_legal")
        assert synchronizer.state == JoinState.WAITING
        assert synchronizer.complete("sp_finance")
        assert synchronizer.state == JoinState.FIRED

    def test_inactive_static_branch_is_not_awaited(self, store, start_end, execution_context):
        """Test a branch whose condition is false does not hold the join."""
        fork, join = self._fork_join(store, start_end, {"branches": [
            {"id": "branch_1", "name": "Urgent", "condition": "priority == high"},
            {"id": "branch_2", "name": "Normal", "condition": "priority == low"},
        ]})
        store.add_edge(fork.id, join.id, source_handle="branch_1")
        store.add_edge(fork.id, join.id, source_handle="branch_2")
        graph = store.graph

        activations = ForkBranchResolver(execution_context).resolve(graph.get_node(fork.id).config)
        expected = join_expected_branches(graph, join.id, fork.id, activations)
        synchronizer = JoinSynchronizer(JoinNodeConfig(), expected)

        assert expected == ["branch_1"]
        assert synchronizer.complete("branch_1")
        assert synchronizer.state == JoinState.FIRED

    def test_reverse_wiring_keeps_fork_branch_ids(self, store, start_end, execution_context):
        """Test join input names do not change which fork branch a completion counts for."""
        fork, join = self._fork_join(store, start_end, {})
        reversed_edge = store.add_edge(fork.id, join.id, source_handle="branch_2")
        store.add_edge(fork.id, join.id, source_handle="branch_1")
        graph = store.graph

        activations = ForkBranchResolver(execution_context).resolve(graph.get_node(fork.id).config)
        expected = join_expected_branches(graph, join.id, fork.id, activations)
        config = JoinNodeConfig(join_type="or", required_branch_ids=["branch_1"])
        synchronizer = JoinSynchronizer(config, expected)

        assert reversed_edge.target_handle == "branch_1"
        assert expected == ["branch_1", "branch_2"]
        assert not synchronizer.complete("branch_2")
        assert synchronizer.complete("branch_1")

    def test_branch_ending_elsewhere_is_not_awaited(self, store, start_end, execution_context):
        """Test a branch that reaches an end without the join is left out."""
        fork, join = self._fork_join(store, start_end, {})
        end_id = start_end[1]
        store.add_edge(fork.id, join.id, source_handle="branch_1")
        store.add_edge(fork.id, end_id, source_handle="branch_2")
        graph = store.graph

        activations = ForkBranchResolver(execution_context).resolve(graph.get_node(fork.id).config)

        assert join_expected_branches(graph, join.id, fork.id, activations) == ["branch_1"]


# ==================== Validation ====================

class TestValidationGate:
    def test_auto_single_approval(self, execution_context):
        """Test a single approval decides an auto gate."""
        gate = ValidationGate(ValidationNodeConfig(sla_hours=24), execution_context, ["m1", "m2"])

        assert gate.enter(now=NOW) == ValidationState.PENDING
        assert gate.due_at == NOW + timedelta(hours=24)
        assert gate.approve("m2") == ValidationState.APPROVED
        assert gate.outcome_port() == "approved"

    def test_single_rejection(self, execution_context):
        """Test a single rejection routes to rejected."""
        gate = ValidationGate(ValidationNodeConfig(), execution_context, ["m1"])
        gate.enter()
        assert gate.reject("m1", comment="Incomplet") == ValidationState.REJECTED
        assert gate.outcome_port() == "rejected"
        assert gate.decisions["m1"].comment == "Incomplet"

    def test_all_mode(self, execution_context):
        """Test all mode waits for every approver."""
        gate = ValidationGate(ValidationNodeConfig(approval_mode="all"), execution_context, ["a", "b"])
        gate.enter()

        assert gate.approve("a") == ValidationState.PENDING
        assert gate.approve("b") == ValidationState.APPROVED

    def test_all_mode_single_rejection_decides(self, execution_context):
        """Test one rejection decides an all-mode gate."""
        gate = ValidationGate(ValidationNodeConfig(approval_mode="all"), execution_context, ["a", "b"])
        gate.enter()
        assert gate.reject("b") == ValidationState.REJECTED

    def test_quorum(self, execution_context):
        """Test a quorum gate approves once the quorum is reached."""
        config = ValidationNodeConfig(approval_mode="quorum", quorum_count=2)
        gate = ValidationGate(config, execution_context, ["a", "b", "c"])
        gate.enter()

        assert gate.reject("a") == ValidationState.PENDING
        assert gate.approve("b") == ValidationState.PENDING
        assert gate.approve("c") == ValidationState.APPROVED

    def test_quorum_unreachable(self, execution_context):
        """Test a quorum gate rejects once the quorum cannot be reached."""
        config = ValidationNodeConfig(approval_mode="quorum", quorum_count=2)
        gate = ValidationGate(config, execution_context, ["a", "b"])
        gate.enter()
        gate.reject("a")
        assert gate.approve("b") == ValidationState.REJECTED

    def test_decision_from_non_approver(self, execution_context):
        """Test a decision from a non-approver is rejected."""
        gate = ValidationGate(ValidationNodeConfig(), execution_context, ["a"])
        gate.enter()
        with pytest.raises(ValueError):
            gate.approve("intrus")

    def test_decision_after_settling(self, execution_context):
        """Test no decision is accepted after the gate settled."""
        gate = ValidationGate(ValidationNodeConfig(), execution_context, ["a", "b"])
        gate.enter()
        gate.approve("a")
        with pytest.raises(ValueError):
            gate.reject("b")

    def test_manual_gate_stays_inert(self, execution_context):
        """Test a manual gate waits for an allowed actor to trigger it."""
        config = ValidationNodeConfig(trigger_mode="manual", trigger_allowed_by="task_owner")
        gate = ValidationGate(config, execution_context, ["a"], node_id="v1")

        assert gate.enter() == ValidationState.INERT
        with pytest.raises(ValueError):
            gate.approve("a")

        with pytest.raises(TriggerNotAllowedError):
            gate.trigger("u-requester")
        assert gate.trigger("u-owner", now=NOW) == ValidationState.PENDING
        assert gate.triggered_at == NOW
        assert gate.history[0].triggered_by == "u-owner"

    @pytest.mark.parametrize(
        "allowed_by,actor,extra",
        [
            ("requester", "u-requester", {}),
            ("specific_user", "u-special", {"trigger_user_id": "u-special"}),
        ],
    )
    def test_trigger_allowed_by(self, execution_context, allowed_by, actor, extra):
        """Test who may trigger a manual gate."""
        config = ValidationNodeConfig(trigger_mode="manual", trigger_allowed_by=allowed_by, **extra)
        gate = ValidationGate(config, execution_context)
        assert gate.can_trigger(actor)
        assert not gate.can_trigger("someone-else")
        assert not gate.can_trigger(None)

    def test_bypass_manual(self, execution_context):
        """Test a bypassed manual gate opens on entry."""
        config = ValidationNodeConfig(trigger_mode="manual", trigger_allowed_by="requester")
        gate = ValidationGate(config, execution_context, bypass_manual=True)
        assert gate.enter() == ValidationState.PENDING

    def test_delegation(self, execution_context):
        """Test an approver can delegate when allowed."""
        gate = ValidationGate(ValidationNodeConfig(allow_delegation=True), execution_context, ["a"])
        gate.enter()
        gate.delegate("a", "d")

        assert gate.approvers == ["d"]
        assert gate.approve("d") == ValidationState.APPROVED

    def test_delegation_not_allowed(self, execution_context):
        """Test delegation is refused when not allowed."""
        gate = ValidationGate(ValidationNodeConfig(), execution_context, ["a"])
        with pytest.raises(ValueError):
            gate.delegate("a", "d")

    @pytest.mark.parametrize(
        "action,expected,port",
        [
            ("auto_approve", ValidationState.APPROVED, "approved"),
            ("auto_reject", ValidationState.REJECTED, "rejected"),
            ("escalate", ValidationState.ESCALATED, None),
            ("notify", ValidationState.PENDING, None),
            (None, ValidationState.EXPIRED, "rejected"),
        ],
    )
    def test_sla_breach(self, execution_context, action, expected, port):
        """Test each SLA breach action and its outcome port."""
        config = ValidationNodeConfig(sla_hours=4, on_timeout_action=action)
        gate = ValidationGate(config, execution_context, ["a"], node_id="v1")
        gate.enter(now=NOW)

        assert gate.is_overdue(NOW + timedelta(hours=5))
        assert not gate.is_overdue(NOW + timedelta(hours=1))
        assert gate.on_sla_breach() == expected
        assert gate.outcome_port() == port

    def test_escalated_gate_can_still_be_decided(self, execution_context):
        """Test an escalated gate can still be approved."""
        config = ValidationNodeConfig(on_timeout_action="escalate")
        gate = ValidationGate(config, execution_context, ["a"])
        gate.enter()
        gate.on_sla_breach()
        assert gate.approve("a") == ValidationState.APPROVED

    def test_second_breach_expires_escalated_gate(self, execution_context):
        """Test an SLA breach on an escalated gate expires it to the rejected port."""
        config = ValidationNodeConfig(sla_hours=4, on_timeout_action="escalate")
        gate = ValidationGate(config, execution_context, ["a"], node_id="v1")
        gate.enter(now=NOW)

        assert gate.on_sla_breach() == ValidationState.ESCALATED
        assert gate.on_sla_breach() == ValidationState.EXPIRED
        assert gate.outcome_port() == "rejected"

    def test_next_validation_target_is_one_hop(self, store, start_end):
        """Test auto-trigger only reaches the next validation."""
        start_id, end_id = start_end
        first = store.add_node("validation", config={"auto_trigger_next": True})
        second = store.add_node("validation", config={"auto_trigger_next": True})
        third = store.add_node("validation")
        store.add_edge(start_id, first.id)
        store.add_edge(first.id, second.id, source_handle="approved")
        store.add_edge(second.id, third.id, source_handle="approved")
        store.add_edge(third.id, end_id, source_handle="approved")
        graph = store.graph

        assert next_validation_target(graph, first.id) == second.id
        assert next_validation_target(graph, second.id) == third.id
        assert next_validation_target(graph, third.id) is None
        assert next_validation_target(graph, start_id) is None

    def test_explicit_next_validation(self, store):
        """Test an explicit next validation id wins over edges."""
        target = store.add_node("validation")
        source = store.add_node(
            "validation",
            config={"auto_trigger_next": True, "next_validation_node_id": target.id},
        )
        assert next_validation_target(store.graph, source.id) == target.id


# ==================== Task, assignment, notification, status ====================

class TestTaskAndAssignment:
    def test_task_outcome_ports(self):
        """Test task outcomes map to ports."""
        assert route_task_outcome(TaskNodeConfig(), TaskOutcome.COMPLETED) == "completed"
        assert route_task_outcome(TaskNodeConfig(), "in_progress") == "in_progress"
        assert route_task_outcome(TaskNodeConfig(requires_validation=True), "completed") == "validation_request"

    @pytest.mark.parametrize(
        "config,target",
        [
            ({"assignment_type": "user", "assignee_id": "u1"}, "u1"),
            ({"assignment_type": "group", "group_id": "g1"}, "g1"),
            ({"assignment_type": "department", "department_id": "d1"}, "d1"),
            ({"assignment_type": "manager"}, "u-manager"),
            ({"assignment_type": "requester"}, "u-requester"),
        ],
    )
    def test_assignment_targets(self, execution_context, config, target):
        """Test each assignment type resolves its target."""
        result = resolve_assignment(AssignmentNodeConfig(**config), execution_context)
        assert result.target_id == target
        assert result.initial_status == TaskStatus.TODO

    def test_assignment_without_auto_start(self, execution_context):
        """Test assignments without auto start begin as to_assign."""
        result = resolve_assignment(AssignmentNodeConfig(auto_start=False), execution_context)
        assert result.initial_status == TaskStatus.TO_ASSIGN


class TestNotification:
    def test_render(self, execution_context):
        """Test notification templates are rendered for the recipient."""
        config = NotificationNodeConfig(
            channels=["email", "teams"],
            recipient_type="assignee",
            subject_template="{tache} - {champ:code_projet}",
            body_template="Montant : {champ:montant} ({inconnu})",
            action_url_template="https://app/requests/{lien}",
        )
        tctx = TemplateContext(
            system={"tache": "Revue", "lien": "42"},
            custom_fields=execution_context.custom_fields,
        )

        rendered = render_notification(config, execution_context, tctx)

        assert rendered.recipient == "u-assignee"
        assert rendered.subject == "Revue - X1"
        assert rendered.body == "Montant : 1500 ({inconnu})"
        assert rendered.action_url == "https://app/requests/42"
        assert [c.value for c in rendered.channels] == ["email", "teams"]

    def test_default_context_uses_custom_fields(self, execution_context):
        """Test rendering without a template context uses custom fields."""
        config = NotificationNodeConfig(
            recipient_type="email",
            recipient_email="equipe@example.com",
            subject_template="Projet {champ:code_projet}",
        )
        rendered = render_notification(config, execution_context)
        assert rendered.recipient == "equipe@example.com"
        assert rendered.subject == "Projet X1"
        assert rendered.action_url is None


class TestStatusChange:
    def test_apply(self):
        """Test a status change applies only on its trigger event."""
        rule = StatusChangeRule(StatusChangeNodeConfig(trigger_event="task_completed", new_status="done"))

        assert rule.apply("task_completed", TaskStatus.IN_PROGRESS) == TaskStatus.DONE
        assert rule.apply("validation_approved", "in-progress") == TaskStatus.IN_PROGRESS

    def test_target_task_is_nearest_upstream(self, linear_store):
        """Test the target task defaults to the nearest upstream task."""
        graph = linear_store.graph
        task = next(n for n in graph.nodes if n.kind.value == "task")
        end = next(n for n in graph.nodes if n.kind.value == "end")

        rule = StatusChangeRule(StatusChangeNodeConfig())
        assert rule.target_task(graph, end.id) == task.id

        explicit = StatusChangeRule(StatusChangeNodeConfig(target_task_node_id="t-explicit"))
        assert explicit.target_task(graph, end.id) == "t-explicit"


# ==================== Variables ====================

class TestVariables:
    @pytest.mark.parametrize(
        "value,variable_type,expected",
        [
            ("oui", VariableType.BOOLEAN, True),
            ("Non", VariableType.BOOLEAN, False),
            ("12", VariableType.INTEGER, 12),
            ("3.5", VariableType.DECIMAL, 3.5),
            (42, VariableType.TEXT, "42"),
            (None, VariableType.INTEGER, None),
        ],
    )
    def test_coerce(self, value, variable_type, expected):
        """Test values are converted to the declared type."""
        assert coerce_variable(value, variable_type) == expected

    @pytest.mark.parametrize(
        "value,variable_type",
        [
            ("peut-être", VariableType.BOOLEAN),
            ("3.5", VariableType.INTEGER),
            ("abc", VariableType.DECIMAL),
            ("inf", VariableType.INTEGER),
            ("-inf", VariableType.INTEGER),
            ("nan", VariableType.DECIMAL),
        ],
    )
    def test_coerce_failure(self, value, variable_type):
        """Test unconvertible values raise ValueError."""
        with pytest.raises(ValueError):
            coerce_variable(value, variable_type)

    def test_fixed_value(self):
        """Test a fixed value is stored with its type."""
        variables = WorkflowVariables()
        config = SetVariableNodeConfig(variable_name="seuil", variable_type="integer", fixed_value="10")
        assert variables.apply(config) == 10
        assert variables.values == {"seuil": 10}

    def test_autonumber_with_prefix_and_padding(self):
        """Test autonumbers use the prefix and padding."""
        variables = WorkflowVariables()
        config = SetVariableNodeConfig(
            variable_name="numero",
            variable_type="autonumber",
            autonumber_prefix="DOS-",
            autonumber_padding=4,
        )
        assert variables.apply(config, now=NOW) == "DOS-0001"
        assert variables.apply(config, now=NOW) == "DOS-0002"

    def test_autonumber_resets_per_period(self):
        """Test autonumbers restart each period."""
        variables = WorkflowVariables()
        config = SetVariableNodeConfig(
            variable_name="numero",
            variable_type="autonumber",
            autonumber_padding=2,
            autonumber_reset="daily",
        )
        assert variables.apply(config, now=NOW) == "01"
        assert variables.apply(config, now=NOW + timedelta(days=1)) == "01"

    def test_expression(self):
        """Test expressions resolve custom fields and variables."""
        variables = WorkflowVariables({"numero": "DOS-0001"})
        config = SetVariableNodeConfig(
            variable_name="reference",
            mode="expression",
            expression="{champ:code_projet}/{numero}",
        )
        tctx = TemplateContext(custom_fields={"code_projet": "X1"})
        assert variables.apply(config, tctx) == "X1/DOS-0001"

    def test_unresolved_expression_stores_no_value(self, caplog):
        """Test an unresolved placeholder in a typed expression is stored as None."""
        variables = WorkflowVariables()
        config = SetVariableNodeConfig(
            variable_name="total",
            variable_type="integer",
            mode="expression",
            expression="{inconnu}",
        )

        with caplog.at_level(logging.WARNING, logger="process_workflow.core.semantics"):
            assert variables.apply(config) is None

        assert variables.values == {"total": None}
        assert "total" in caplog.text

    def test_datetime_modes(self):
        """Test execution time and fixed datetime variables."""
        variables = WorkflowVariables()
        execution = SetVariableNodeConfig(variable_name="d1", variable_type="datetime", datetime_mode="execution")
        fixed = SetVariableNodeConfig(
            variable_name="d2",
            variable_type="datetime",
            datetime_mode="fixed",
            datetime_value="2026-01-31T12:00:00+00:00",
        )
        assert variables.apply(execution, now=NOW) == NOW
        assert variables.apply(fixed).month == 1

    def test_export_for_subprocess(self):
        """Test only accessible variables are exported to sub-processes."""
        variables = WorkflowVariables()
        variables.apply(SetVariableNodeConfig(variable_name="a", fixed_value="1", accessible_to_subprocesses=True))
        variables.apply(SetVariableNodeConfig(variable_name="b", fixed_value="2"))
        assert variables.export_for_subprocess() == {"a": "1"}

        variables.apply(SetVariableNodeConfig(variable_name="a", fixed_value="3"))
        assert variables.export_for_subprocess() == {}


# ==================== Sub-process and datalake ====================

class TestSubProcessAndDatalake:
    def test_should_delegate(self):
        """Test sub-process delegation honors the selection."""
        context = ExecutionContext(selected_sub_processes=["sp-legal"])
        assert not should_delegate(SubProcessNodeConfig(), context)
        assert should_delegate(SubProcessNodeConfig(sub_process_template_id="sp-finance"), context)
        assert not should_delegate(
            SubProcessNodeConfig(sub_process_template_id="sp-finance", branch_on_selection=True),
            context,
        )
        assert should_delegate(
            SubProcessNodeConfig(sub_process_template_id="sp-legal", branch_on_selection=True),
            context,
        )

    def test_datalake_ports_and_retries(self):
        """Test datalake outcome ports and retry backoff."""
        assert datalake_outcome_port(True) == "success"
        assert datalake_outcome_port(False) == "error"

        config = DatalakeSyncNodeConfig(retry_count=3, retry_backoff_seconds=10)
        assert datalake_retry_delays(config) == [10, 20, 40]
        assert datalake_retry_delays(DatalakeSyncNodeConfig()) == []
