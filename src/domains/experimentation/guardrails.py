"""Guardrail monitoring: catch experiments that hurt safety metrics.

Each guardrail compares a treatment's aggregate against the control's and
flags a violation when the change passes the threshold in the configured
direction. A violating check cycle dispatches one action (the most severe of
alert < pause < stop). Once an experiment is no longer running, repeated
checks still report violations but never act again.
"""

import asyncio
import contextlib
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

import structlog

from .config import ExperimentationConfig, default_config
from .errors import (
    ConfigurationError,
    ExperimentationError,
    InputError,
    TransientCollaboratorError,
)
from .lifecycle import complete_experiment, pause_experiment, validate_guardrail_metrics
from .models import (
    Experiment,
    ExperimentStatus,
    GuardrailAction,
    GuardrailComparison,
    GuardrailConfig,
    GuardrailDirection,
    GuardrailResult,
    VariantStats,
)
from .store import ExperimentRepository, LoggingNotifier, MetricsAggregator, Notifier

logger = structlog.get_logger()

_ACTION_RANK = {
    GuardrailAction.ALERT: 1,
    GuardrailAction.PAUSE: 2,
    GuardrailAction.STOP: 3,
}


def resolve_action(guardrail: GuardrailConfig, config: ExperimentationConfig) -> GuardrailAction:
    if guardrail.action is not None:
        return guardrail.action
    return GuardrailAction(config.guardrails.severity_actions[guardrail.severity.value])


def evaluate_guardrail(
    experiment_id: str,
    guardrail: GuardrailConfig,
    variant_id: str,
    control_value: float,
    treatment_value: float,
    action: GuardrailAction,
) -> GuardrailResult:
    """Pure comparison of one treatment aggregate against the control's."""
    absolute_change = treatment_value - control_value
    relative_change = absolute_change / control_value if control_value != 0 else None

    # Signed so that a positive value always means "moved the bad way"
    sign = 1.0 if guardrail.direction == GuardrailDirection.INCREASE else -1.0
    if guardrail.comparison == GuardrailComparison.ABSOLUTE:
        violated = sign * absolute_change > guardrail.threshold
    elif relative_change is None:
        # Any move away from a zero baseline is unbounded in relative terms
        violated = sign * absolute_change > 0
    else:
        violated = sign * relative_change > guardrail.threshold

    change_text = (
        f"{relative_change:+.2%}" if relative_change is not None else f"{absolute_change:+.4f}"
    )
    return GuardrailResult(
        experiment_id=experiment_id,
        metric_name=guardrail.metric_name,
        variant_id=variant_id,
        control_value=control_value,
        treatment_value=treatment_value,
        absolute_change=absolute_change,
        relative_change=relative_change,
        threshold=guardrail.threshold,
        direction=guardrail.direction,
        comparison=guardrail.comparison,
        severity=guardrail.severity,
        action=action,
        violated=violated,
        description=(
            f"{'BREACHED' if violated else 'OK'}: {guardrail.metric_name} "
            f"{control_value:.4f} -> {treatment_value:.4f} ({change_text})"
        ),
    )


class GuardrailMonitor:
    def __init__(
        self,
        repository: ExperimentRepository,
        aggregator: MetricsAggregator,
        notifier: Notifier | None = None,
        config: ExperimentationConfig | None = None,
    ) -> None:
        self._repository = repository
        self._aggregator = aggregator
        self._notifier = notifier or LoggingNotifier()
        self._config = config or default_config
        self._last_alert: dict[tuple[str, tuple[str, ...]], datetime] = {}

    async def check_guardrails(
        self,
        experiment_id: str,
        configs: Iterable[GuardrailConfig] | None = None,
    ) -> list[GuardrailResult]:
        """Evaluate guardrails for every treatment against the control.

        ``configs`` defaults to the guardrails stored on the experiment.
        """
        experiment = await self._get_experiment(experiment_id)
        guardrails = list(configs) if configs is not None else list(experiment.guardrails)
        self._validate(experiment, guardrails)

        control = experiment.control
        results: list[GuardrailResult] = []
        for guardrail in guardrails:
            action = resolve_action(guardrail, self._config)
            control_stats = await self._stats(experiment_id, control.variant_id, guardrail)
            if control_stats.n == 0:
                logger.info(
                    "guardrail_no_data",
                    experiment_id=experiment_id,
                    variant_id=control.variant_id,
                    metric=guardrail.metric_name,
                )
                continue
            for treatment in experiment.treatments:
                treatment_stats = await self._stats(experiment_id, treatment.variant_id, guardrail)
                if treatment_stats.n == 0:
                    logger.info(
                        "guardrail_no_data",
                        experiment_id=experiment_id,
                        variant_id=treatment.variant_id,
                        metric=guardrail.metric_name,
                    )
                    continue
                result = evaluate_guardrail(
                    experiment_id,
                    guardrail,
                    treatment.variant_id,
                    control_stats.mean,
                    treatment_stats.mean,
                    action,
                )
                if result.violated:
                    logger.warning(
                        "guardrail_breached",
                        experiment_id=experiment_id,
                        variant_id=treatment.variant_id,
                        metric=guardrail.metric_name,
                        control_value=result.control_value,
                        treatment_value=result.treatment_value,
                        threshold=guardrail.threshold,
                        direction=guardrail.direction,
                    )
                results.append(result)

        violations = [r for r in results if r.violated]
        if not violations:
            return results

        taken = await self._dispatch(experiment, violations)
        if taken is None:
            return results
        return [
            r.model_copy(update={"action_taken": taken}) if r.violated else r for r in results
        ]

    def _validate(self, experiment: Experiment, guardrails: list[GuardrailConfig]) -> None:
        if experiment.control is None:
            raise ConfigurationError(
                f"Experiment {experiment.experiment_id} has no control variant"
            )
        validate_guardrail_metrics(experiment, guardrails)

    async def _dispatch(
        self, experiment: Experiment, violations: list[GuardrailResult]
    ) -> GuardrailAction | None:
        experiment_id = experiment.experiment_id
        if experiment.status != ExperimentStatus.RUNNING:
            logger.info(
                "guardrail_action_skipped",
                experiment_id=experiment_id,
                status=experiment.status,
            )
            return None

        action = max((v.action for v in violations), key=_ACTION_RANK.__getitem__)
        metrics = tuple(sorted({v.metric_name for v in violations}))
        reason = f"guardrail breached: {', '.join(metrics)}"

        if action == GuardrailAction.STOP:
            await complete_experiment(self._repository, experiment_id, reason=reason)
        elif action == GuardrailAction.PAUSE:
            await pause_experiment(self._repository, experiment_id, reason=reason)
        else:
            if self._alert_suppressed(experiment_id, metrics):
                logger.info("guardrail_alert_suppressed", experiment_id=experiment_id)
                return None
            key = (experiment_id, metrics)
            # Claim the window before awaiting so overlapping checks see it
            self._last_alert[key] = datetime.now(UTC)
            try:
                await self._notifier.notify(experiment, violations)
            except Exception:
                self._last_alert.pop(key, None)
                raise

        logger.warning(
            "guardrail_action_dispatched",
            experiment_id=experiment_id,
            action=action,
            metrics=list(metrics),
        )
        return action

    def _alert_suppressed(self, experiment_id: str, metrics: tuple[str, ...]) -> bool:
        last = self._last_alert.get((experiment_id, metrics))
        if last is None:
            return False
        window = timedelta(seconds=self._config.guardrails.alert_suppression_seconds)
        return datetime.now(UTC) - last < window

    async def _get_experiment(self, experiment_id: str) -> Experiment:
        try:
            experiment = await self._repository.get(experiment_id)
        except ExperimentationError:
            raise
        except Exception as exc:
            logger.error(
                "experiment_repository_failed", experiment_id=experiment_id, error=str(exc)
            )
            raise TransientCollaboratorError(
                f"Experiment repository failed for {experiment_id}: {exc}"
            ) from exc
        if experiment is None:
            raise InputError(f"Unknown experiment '{experiment_id}'")
        return experiment

    async def _stats(
        self, experiment_id: str, variant_id: str, guardrail: GuardrailConfig
    ) -> VariantStats:
        try:
            return await self._aggregator.get_variant_stats(
                experiment_id, variant_id, guardrail.metric_name
            )
        except ExperimentationError:
            raise
        except Exception as exc:
            logger.error(
                "metrics_aggregator_failed",
                experiment_id=experiment_id,
                variant_id=variant_id,
                metric=guardrail.metric_name,
                error=str(exc),
            )
            raise TransientCollaboratorError(
                f"Metrics aggregator failed for {experiment_id}/{variant_id}: {exc}"
            ) from exc


async def run_guardrail_cycle(
    monitor: GuardrailMonitor, repository: ExperimentRepository
) -> dict[str, list[GuardrailResult]]:
    """Check every running experiment once. One failing experiment does not
    stop the others."""
    outcomes: dict[str, list[GuardrailResult]] = {}
    for experiment in await repository.list_experiments(ExperimentStatus.RUNNING):
        if not experiment.guardrails:
            continue
        try:
            outcomes[experiment.experiment_id] = await monitor.check_guardrails(
                experiment.experiment_id
            )
        except ExperimentationError:
            logger.exception("guardrail_check_failed", experiment_id=experiment.experiment_id)
    return outcomes


async def run_guardrail_loop(
    monitor: GuardrailMonitor,
    repository: ExperimentRepository,
    interval_seconds: float,
    stop_event: asyncio.Event,
) -> None:
    """Periodic guardrail checks until ``stop_event`` is set."""
    logger.info("guardrail_loop_started", interval_seconds=interval_seconds)
    while not stop_event.is_set():
        try:
            outcomes = await run_guardrail_cycle(monitor, repository)
        except Exception:
            # Repository outage; retry on the next tick
            logger.exception("guardrail_cycle_failed")
        else:
            logger.info(
                "guardrail_cycle_completed",
                experiments_checked=len(outcomes),
                violations=sum(1 for rs in outcomes.values() for r in rs if r.violated),
            )
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
    logger.info("guardrail_loop_stopped")
