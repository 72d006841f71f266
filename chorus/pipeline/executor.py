"""
Pipeline Executor
=================
Walks the phases of a pipeline definition for one run.

For every phase:
1. Resolve each action's prompt against the context store, its declared
   inputs, output blocks and thread tails
2. Submit the calls through the shared dispatcher, one at a time (sequential)
   or all at once joined on completion (parallel)
3. Write action outputs to their bindings, append thread entries and compute
   the phase output
4. Optionally suspend on the review gate and apply the decision
5. On failure, apply the phase's failure policy (fail, skip, use_last_output)

Run states: created -> running (<-> paused) -> {completed, aborted, failed}.

Writes from sibling actions in a parallel phase are staged and only committed
after the join, in completion order; in a sequential phase each action's writes
are visible to the actions after it.

``abort()`` is honored at phase boundaries, before each sequential action,
for calls still queued in the dispatcher, and immediately while waiting on the
review gate. Calls already in flight finish and their results are discarded
(the action is recorded as skipped). ``pause()`` suspends the run at the same
checkpoints until ``resume()`` or ``abort()``.

A sequential phase stops at its first failed required action; the actions
after it are skipped.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import uuid4

from loguru import logger

from chorus.config import LEDGER
from chorus.context.durable import DurableStore
from chorus.context.ledger import EntryType, ThreadLedger, phase_thread, team_thread
from chorus.context.outputs import OutputManager
from chorus.context.store import ScopedContextStore, StagedWrites, parse_binding
from chorus.errors import (
    ActionFailure,
    CallError,
    CallTimeout,
    PhaseFailure,
    RunAborted,
    taxonomy_name,
)
from chorus.llm.backend import CallRequest
from chorus.llm.dispatcher import CallDispatcher, DispatchResult
from chorus.pipeline.definition import (
    ActionSpec,
    FailurePolicy,
    Parallelism,
    PhaseSpec,
    PipelineDefinition,
)
from chorus.pipeline.events import EventChannel, EventType
from chorus.pipeline.gavel import GavelDecision, GavelRequest, GavelResponse, ReviewGate
from chorus.pipeline.state import (
    ActionRecord,
    ActionStatus,
    FailureReport,
    PhaseRecord,
    PhaseStatus,
    RunState,
    RunStatus,
)
from chorus.pipeline.templates import TemplateContext, render, resolve_inputs, stringify
from chorus.tracing import traced_span

GAVEL_AUTHOR = "gavel"
DEFAULT_REVIEW_PROMPT = "Review and edit:"


@dataclass
class ActionOutcome:
    """Settled result of one action, before it is committed."""
    phase: PhaseSpec
    action: ActionSpec
    result: Optional[DispatchResult] = None
    failure: Optional[ActionFailure] = None
    staged: StagedWrites = field(default_factory=lambda: StagedWrites(author=""))

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.failure is None

    @property
    def content(self) -> str:
        return self.result.content if self.result is not None else ""


class PipelineExecutor:
    """
    Runs one pipeline definition once.

    Usage:
        executor = PipelineExecutor(definition, dispatcher, user_input="A story about tides")
        state = await executor.run()
        executor.outputs.current_content("draft")
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        dispatcher: CallDispatcher,
        *,
        user_input: str = "",
        static: Optional[Mapping[str, Any]] = None,
        durable: Optional[DurableStore] = None,
        run_id: Optional[str] = None,
        gate: Optional[ReviewGate] = None,
        failure_tail: int = LEDGER.FAILURE_TAIL,
    ):
        """
        Args:
            definition: Validated pipeline definition
            dispatcher: Process-wide call dispatcher
            user_input: Request that started the run, exposed as ``{{input}}``
                and ``static.input``
            static: Additional write-once values seeded before the first phase
            durable: Process-wide durable store backing ``store:<name>``
            run_id: Explicit run id (generated when omitted)
            gate: Review gate (one per run)
            failure_tail: Thread entries attached to a failure report
        """
        self.definition = definition
        self.dispatcher = dispatcher
        self.user_input = user_input
        self.failure_tail = failure_tail

        self.state = RunState(pipeline_id=definition.id, run_id=run_id or uuid4().hex)
        self.outputs = OutputManager()
        self.ledger = ThreadLedger()
        self.context = ScopedContextStore(durable=durable, outputs=self.outputs, run_id=self.state.run_id)
        self.gate = gate or ReviewGate()
        self.events = EventChannel(self.state.run_id)
        self.phase_outputs: Dict[str, str] = {}

        self._static = dict(static or {})
        self._cancel = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._abort_reason = "Run aborted"

        for phase in definition.phases:
            record = PhaseRecord(phase_id=phase.id)
            for action in phase.actions:
                record.actions[action.id] = ActionRecord(action_id=action.id, optional=action.optional)
            self.state.phases[phase.id] = record

    @property
    def run_id(self) -> str:
        return self.state.run_id

    @property
    def aborted(self) -> bool:
        return self._cancel.is_set()

    @property
    def paused(self) -> bool:
        return self.state.status is RunStatus.PAUSED

    # ========== Caller API ==========

    def abort(self, reason: str = "Run aborted by caller") -> None:
        """Request cancellation. Idempotent; ignored once the run is terminal."""
        if self.state.is_terminal or self._cancel.is_set():
            return
        self._abort_reason = reason
        self._cancel.set()
        self._resumed.set()
        logger.warning(f"Run {self.run_id}: abort requested ({reason})")
        self.gate.abort(reason)

    def pause(self) -> bool:
        """Hold the run at its next checkpoint. Returns False unless the run is running."""
        if self.state.status is not RunStatus.RUNNING or self._cancel.is_set():
            return False
        self.state.transition(RunStatus.PAUSED)
        self._resumed.clear()
        self._publish(EventType.RUN_PAUSED)
        logger.info(f"Run {self.run_id} paused")
        return True

    def resume(self) -> bool:
        """Release a paused run. Returns False unless the run is paused."""
        if self.state.status is not RunStatus.PAUSED:
            return False
        self.state.transition(RunStatus.RUNNING)
        self._resumed.set()
        self._publish(EventType.RUN_RESUMED)
        logger.info(f"Run {self.run_id} resumed")
        return True

    def submit_gavel_response(self, response: Union[GavelResponse, Mapping[str, Any]]) -> None:
        """Deliver a review decision from the presentation layer."""
        if not isinstance(response, GavelResponse):
            response = GavelResponse.from_dict(response)
        self.gate.submit(response)

    @property
    def pending_gavel(self) -> Optional[GavelRequest]:
        return self.gate.pending

    async def run(self) -> RunState:
        """Execute every phase. Returns the final run state."""
        if self.state.status is not RunStatus.CREATED:
            raise RuntimeError(f"Run {self.run_id} was already started")

        if self._cancel.is_set():
            self._finish_aborted(RunAborted(self._abort_reason))
            return self.state

        self.context.seed_static({"input": self.user_input, **self._static})
        self.context.seal_static()

        self.state.transition(RunStatus.RUNNING)
        self._publish(EventType.RUN_START, pipeline_id=self.definition.id, phases=[p.id for p in self.definition.phases])
        logger.info(f"Run {self.run_id} started ({len(self.definition.phases)} phase(s))")

        with traced_span("chorus.run", {"chorus.run_id": self.run_id, "chorus.pipeline_id": self.definition.id}) as span:
            try:
                for index, phase in enumerate(self.definition.phases):
                    await self._checkpoint()
                    self.state.current_phase_index = index
                    await self._run_phase(phase)
                self._finish_completed()
            except RunAborted as e:
                self._finish_aborted(e)
            except PhaseFailure as e:
                self._finish_failed(e)
            except asyncio.CancelledError:
                self._finish_cancelled()
                raise
            except Exception as e:
                logger.exception(f"Run {self.run_id} crashed: {e}")
                self._record_failure(e, phase_id=self._current_phase_id(), action_id=None)
                self.state.transition(RunStatus.FAILED)
                self._publish(EventType.RUN_FAILED, failure=self.state.failure.to_dict())
                raise
            finally:
                span.set_attribute("chorus.run.status", self.state.status.value)
                self.context.discard()

        return self.state

    def summary(self) -> Dict[str, Any]:
        """Run state plus retained outputs, for reporting."""
        return {
            "state": self.state.to_payload(),
            "outputs": self.outputs.snapshot(),
            "phase_outputs": dict(self.phase_outputs),
            "reviews": self.gate.recent_decisions(),
        }

    # ========== Phases ==========

    async def _run_phase(self, phase: PhaseSpec) -> None:
        self.state.set_phase_status(phase.id, PhaseStatus.RUNNING)
        self._publish(
            EventType.PHASE_START,
            phase_id=phase.id,
            name=phase.name,
            parallelism=phase.parallelism.value,
            actions=[a.id for a in phase.actions],
        )
        logger.info(f"Run {self.run_id}: phase '{phase.id}' started ({phase.parallelism.value})")

        with traced_span("chorus.phase", {"chorus.phase_id": phase.id, "chorus.run_id": self.run_id}):
            if phase.parallelism is Parallelism.PARALLEL:
                outcomes = await self._run_parallel(phase)
            else:
                outcomes = await self._run_sequential(phase)

            failures = [o.failure for o in outcomes if o.failure is not None and not o.action.optional]
            if failures:
                await self._apply_failure_policy(phase, PhaseFailure(phase.id, failures))
                return

            phase_output = self._phase_output(phase, outcomes)
            edited: Dict[str, Any] = {}

            if phase.review.required:
                response = await self._review(phase, phase_output)
                if response.decision is GavelDecision.REJECTED:
                    reason = "rejected by review"
                    if response.commentary:
                        reason = f"{reason}: {response.commentary}"
                    await self._apply_failure_policy(phase, PhaseFailure(phase.id, reason=reason))
                    return
                self._apply_edits(phase, response)
                if response.final_output is not None:
                    phase_output = str(response.final_output)
                elif response.edited_values:
                    edited = response.edited_values
                    phase_output = self._edited_output(phase, edited)

            await self._write_phase_output(phase, phase_output, edited=edited)
            self.state.set_phase_status(phase.id, PhaseStatus.DONE)
            self._publish(
                EventType.PHASE_COMPLETE,
                phase_id=phase.id,
                action_statuses=self.state.phase(phase.id).action_statuses(),
                output_key=phase.output_key,
            )
            logger.info(f"Run {self.run_id}: phase '{phase.id}' done")

    async def _run_sequential(self, phase: PhaseSpec) -> List[ActionOutcome]:
        outcomes: List[ActionOutcome] = []
        loop = asyncio.get_running_loop()
        deadline = loop.time() + phase.timeout if phase.timeout else None

        for index, action in enumerate(phase.actions):
            await self._checkpoint()

            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                for late in phase.actions[index:]:
                    outcome = self._timed_out(phase, late)
                    await self._commit(outcome)
                    outcomes.append(outcome)
                break

            try:
                outcome = await asyncio.wait_for(self._run_action(phase, action), timeout=remaining)
            except asyncio.TimeoutError:
                outcome = self._timed_out(phase, action)

            if self.aborted:
                self._discard(outcome)
                self._check_abort()
            await self._commit(outcome)
            outcomes.append(outcome)

            if outcome.failure is not None and not action.optional:
                self._skip_remaining(phase, phase.actions[index + 1:], action)
                break

        return outcomes

    async def _run_parallel(self, phase: PhaseSpec) -> List[ActionOutcome]:
        completed: List[ActionOutcome] = []

        async def _tracked(action: ActionSpec) -> ActionOutcome:
            outcome = await self._run_action(phase, action)
            completed.append(outcome)
            return outcome

        tasks = {asyncio.ensure_future(_tracked(action)): action for action in phase.actions}
        try:
            _, pending = await asyncio.wait(tasks, timeout=phase.timeout or None)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            for task in pending:
                completed.append(self._timed_out(phase, tasks[task]))

        if self.aborted:
            for outcome in completed:
                self._discard(outcome)
            self._check_abort()

        # Commit staged sibling writes in completion order
        for outcome in completed:
            await self._commit(outcome)
        return completed

    def _timed_out(self, phase: PhaseSpec, action: ActionSpec) -> ActionOutcome:
        cause = CallTimeout(f"Phase '{phase.id}' timed out after {phase.timeout}s")
        return self._failed_outcome(phase, action, cause)

    def _discard(self, outcome: ActionOutcome) -> None:
        """Mark a result that settled after an abort; it is never committed."""
        if not outcome.succeeded:
            return
        record = self.state.phase(outcome.phase.id).actions[outcome.action.id]
        record.status = ActionStatus.SKIPPED
        record.discarded = True
        logger.debug(f"Action '{outcome.action.id}' result discarded after abort")

    def _skip_remaining(self, phase: PhaseSpec, actions: List[ActionSpec], failed: ActionSpec) -> None:
        for action in actions:
            self.state.phase(phase.id).actions[action.id].status = ActionStatus.SKIPPED
        if actions:
            logger.warning(
                f"Run {self.run_id}: '{failed.id}' failed; skipping {', '.join(a.id for a in actions)}"
            )

    # ========== Actions ==========

    def _build_request(self, phase: PhaseSpec, action: ActionSpec) -> CallRequest:
        agent = self.definition.agent_for(action)
        inputs = resolve_inputs(action.inputs, self.context, phase.id)
        template_context = TemplateContext(
            store=self.context,
            ledger=self.ledger,
            phase_id=phase.id,
            user_input=self.user_input,
            inputs=inputs,
        )
        return CallRequest(
            system_prompt=render(agent.system_prompt, template_context),
            user_prompt=render(action.prompt_template, template_context),
            api_config=dict(agent.api),
            generation_config={**agent.generation, **action.generation},
            timeout=action.timeout,
            max_retries=action.retries,
            label=f"{phase.id}/{action.id}",
        )

    async def _run_action(self, phase: PhaseSpec, action: ActionSpec) -> ActionOutcome:
        """Run one action; errors become a failed outcome instead of escaping."""
        record = self.state.phase(phase.id).actions[action.id]
        record.status = ActionStatus.RUNNING

        try:
            request = self._build_request(phase, action)
            result = await self.dispatcher.submit(request, cancel=self._cancel)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._failed_outcome(phase, action, e)

        record.status = ActionStatus.SUCCEEDED
        record.attempts = result.attempts
        record.duration = result.duration
        record.prompt_tokens = result.prompt_tokens
        record.response_tokens = result.response_tokens
        record.tokens_estimated = result.tokens_estimated

        staged = StagedWrites(author=action.id)
        for binding in action.outputs:
            staged.stage(binding, result.content)
        staged.stage(f"action.{action.id}.output", result.content)

        return ActionOutcome(phase=phase, action=action, result=result, staged=staged)

    def _failed_outcome(self, phase: PhaseSpec, action: ActionSpec, cause: BaseException) -> ActionOutcome:
        attempts = getattr(cause, "attempts", 0) if isinstance(cause, CallError) else 0
        failure = ActionFailure(action.id, phase.id, cause, attempts=attempts)

        record = self.state.phase(phase.id).actions[action.id]
        record.status = ActionStatus.SKIPPED if isinstance(cause, RunAborted) else ActionStatus.FAILED
        record.attempts = attempts
        record.error = failure.to_dict()

        if isinstance(cause, RunAborted):
            logger.debug(f"Action '{action.id}' withdrawn: {cause}")
        elif action.optional:
            logger.warning(f"Optional action '{action.id}' failed: {failure.cause_type}: {cause}")
        else:
            logger.error(f"Action '{action.id}' failed: {failure.cause_type}: {cause}")

        return ActionOutcome(phase=phase, action=action, failure=failure, staged=StagedWrites(author=action.id))

    async def _commit(self, outcome: ActionOutcome) -> None:
        """Apply an outcome: context writes, thread entries, event."""
        phase, action = outcome.phase, outcome.action
        record = self.state.phase(phase.id).actions[action.id]

        if outcome.succeeded:
            await outcome.staged.acommit(self.context, phase.id)
            agent = self.definition.agent_for(action)
            speaker_name = self.definition.speaker_name(action)
            if outcome.content.strip():
                self.ledger.append(
                    phase_thread(phase.id), agent.id, outcome.content, EntryType.OUTPUT, speaker_name=speaker_name
                )
                if action.team:
                    self.ledger.append(
                        team_thread(action.team), agent.id, outcome.content, EntryType.OUTPUT, speaker_name=speaker_name
                    )
        else:
            self.ledger.append(
                phase_thread(phase.id),
                "system",
                f"Action '{action.id}' failed: {outcome.failure.cause_type}: {outcome.failure.cause}",
                EntryType.SYSTEM,
            )

        self._publish(
            EventType.ACTION_RESULT,
            phase_id=phase.id,
            action_id=action.id,
            status=record.status.value,
            optional=action.optional,
            attempts=record.attempts,
            prompt_tokens=record.prompt_tokens,
            response_tokens=record.response_tokens,
            error=record.error,
        )

    def _phase_output(self, phase: PhaseSpec, outcomes: List[ActionOutcome]) -> str:
        """Content of ``output_action``, else successful outputs joined in declared order."""
        by_id = {o.action.id: o for o in outcomes}
        if phase.output_action:
            outcome = by_id.get(phase.output_action)
            return outcome.content if outcome is not None and outcome.succeeded else ""
        parts = [
            by_id[a.id].content
            for a in phase.actions
            if a.id in by_id and by_id[a.id].succeeded and by_id[a.id].content
        ]
        return "\n\n".join(parts)

    async def _write_phase_output(
        self, phase: PhaseSpec, output: str, edited: Optional[Mapping[str, Any]] = None
    ) -> None:
        target = parse_binding(phase.output_key).resolve(phase.id)
        if edited and target.key in edited and target.scope in ("block", f"phase:{phase.id}"):
            # Review edit already wrote this target
            logger.debug(f"Run {self.run_id}: '{phase.output_key}' kept from review edit")
        else:
            await self.context.awrite_binding(phase.output_key, output, phase_id=phase.id, author=phase.id)
        self.phase_outputs[phase.id] = output

    # ========== Review ==========

    async def _review(self, phase: PhaseSpec, output: str) -> GavelResponse:
        self._check_abort()
        self.state.set_phase_status(phase.id, PhaseStatus.AWAITING_REVIEW)
        request = GavelRequest(
            run_id=self.run_id,
            phase_id=phase.id,
            prompt=phase.review.prompt or DEFAULT_REVIEW_PROMPT,
            output=output,
            editable_fields=phase.review.editable_fields,
            can_skip=phase.review.can_skip,
            sequence=self.state.sequence + 1,
            timeout=phase.review.timeout,
        )
        self._publish(EventType.GAVEL_REQUESTED, **request.to_dict())

        response = await self.gate.open(request)

        record = self.state.phase(phase.id)
        record.decision = response.decision.value
        self._publish(
            EventType.GAVEL_RESOLVED,
            phase_id=phase.id,
            request_id=request.request_id,
            decision=response.decision.value,
            edited_fields=sorted(response.edited_values),
            commentary=response.commentary,
        )

        if response.decision is GavelDecision.ABORTED:
            raise RunAborted(self._abort_reason)

        content = response.decision.value
        if response.commentary:
            content = f"{content}: {response.commentary}"
        self.ledger.append(phase_thread(phase.id), GAVEL_AUTHOR, content, EntryType.DECISION)

        self.state.set_phase_status(phase.id, PhaseStatus.RUNNING)
        return response

    def _apply_edits(self, phase: PhaseSpec, response: GavelResponse) -> None:
        for field_name, value in response.edited_values.items():
            self.outputs.write(field_name, value, GAVEL_AUTHOR)
            self.context.set(f"phase:{phase.id}", field_name, value, writer=GAVEL_AUTHOR)
        if response.edited_values:
            logger.info(
                f"Run {self.run_id}: review of '{phase.id}' edited {', '.join(sorted(response.edited_values))}"
            )

    @staticmethod
    def _edited_output(phase: PhaseSpec, edited: Mapping[str, Any]) -> str:
        """Phase output rebuilt from review edits, in ``editable_fields`` order."""
        fields = [name for name in phase.review.editable_fields if name in edited]
        return "\n\n".join(stringify(edited[name]) for name in fields)

    # ========== Failure handling ==========

    async def _apply_failure_policy(self, phase: PhaseSpec, failure: PhaseFailure) -> None:
        self.state.set_phase_status(phase.id, PhaseStatus.FAILED, note=failure.reason)
        self._publish(
            EventType.PHASE_FAILED,
            phase_id=phase.id,
            reason=failure.reason,
            failed_actions=failure.failed_action_ids,
            policy=phase.on_failure.value,
        )
        logger.warning(f"Run {self.run_id}: {failure} (policy {phase.on_failure.value})")

        if phase.on_failure is FailurePolicy.SKIP:
            self.state.set_phase_status(phase.id, PhaseStatus.SKIPPED, note=f"skipped after failure: {failure.reason}")
            return

        if phase.on_failure is FailurePolicy.USE_LAST_OUTPUT:
            fallback = self.outputs.current_content(phase.fallback_block) or ""
            await self._write_phase_output(phase, fallback)
            self.state.set_phase_status(
                phase.id, PhaseStatus.DONE, note=f"used last output of block '{phase.fallback_block}'"
            )
            return

        raise failure

    def _check_abort(self) -> None:
        if self._cancel.is_set():
            raise RunAborted(self._abort_reason)

    async def _checkpoint(self) -> None:
        """Abort and pause checkpoint between phases and sequential actions."""
        self._check_abort()
        if not self._resumed.is_set():
            logger.info(f"Run {self.run_id}: holding at checkpoint while paused")
            await self._resumed.wait()
        self._check_abort()

    def _current_phase_id(self) -> Optional[str]:
        index = self.state.current_phase_index
        if 0 <= index < len(self.definition.phases):
            return self.definition.phases[index].id
        return None

    def _record_failure(self, exc: BaseException, phase_id: Optional[str], action_id: Optional[str]) -> None:
        self.state.failure = FailureReport(
            phase_id=phase_id,
            action_id=action_id,
            taxonomy=taxonomy_name(exc),
            message=str(exc),
            thread_tail=[entry.to_dict() for entry in self.ledger.recent(self.failure_tail)],
        )

    def _finish_completed(self) -> None:
        self.state.transition(RunStatus.COMPLETED)
        self._publish(EventType.RUN_COMPLETE, phase_outputs=dict(self.phase_outputs))
        logger.info(f"Run {self.run_id} completed")

    def _finish_failed(self, failure: PhaseFailure) -> None:
        first = failure.failures[0] if failure.failures else None
        self._record_failure(
            first if first is not None else failure,
            phase_id=failure.phase_id,
            action_id=first.action_id if first is not None else None,
        )
        self.state.failure.message = str(failure)
        self.state.transition(RunStatus.FAILED)
        self._publish(EventType.RUN_FAILED, failure=self.state.failure.to_dict())
        logger.error(f"Run {self.run_id} failed: {failure}")

    def _finish_aborted(self, exc: RunAborted) -> None:
        self._cancel.set()
        self._record_failure(exc, phase_id=self._current_phase_id(), action_id=None)
        self.state.transition(RunStatus.ABORTED)
        self._publish(EventType.RUN_ABORTED, failure=self.state.failure.to_dict())
        logger.warning(f"Run {self.run_id} aborted: {exc}")

    def _finish_cancelled(self) -> None:
        """The run task itself was cancelled: release waiters and end as aborted."""
        reason = "Run task cancelled"
        if not self._cancel.is_set():
            self._abort_reason = reason
        self._resumed.set()
        self.gate.abort(reason)
        self._finish_aborted(RunAborted(self._abort_reason))

    def _publish(self, event_type: EventType, **payload: Any) -> None:
        self.events.publish(event_type, self.state.bump(), **payload)
