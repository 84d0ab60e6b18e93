"""Multi-armed bandit allocation.

Two flavours share the same shape (``select_arm`` / ``update_arm``):

- ``ThompsonSampler``: context-free, one Beta(successes, failures) posterior
  per arm. Selection draws once from every posterior and takes the max, so
  exploration falls out of posterior uncertainty with no epsilon schedule.
- ``LinUCBBandit``: contextual, one ridge-regression model per arm. Selection
  scores ``theta . x + alpha * sqrt(x' A^-1 x)`` and takes the max.

Arm state lives in small immutable records. An update builds a new record
under that arm's lock and swaps it in, so updates to different arms never
contend and readers always see a whole record.
"""

import random
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

import numpy as np
import structlog

from .config import BanditSettings, ExperimentationConfig, default_config
from .errors import ConfigurationError, InputError
from .linalg import invert_matrix
from .sampling import beta_sample

logger = structlog.get_logger()


@dataclass(frozen=True)
class BetaArm:
    arm_id: str
    successes: float  # prior plus observed
    failures: float
    pulls: int = 0  # observations only

    @property
    def mean(self) -> float:
        return self.successes / (self.successes + self.failures)


@dataclass(frozen=True, eq=False)
class LinearArm:
    arm_id: str
    precision: np.ndarray  # A = lambda * I + sum(x x')
    reward_vector: np.ndarray  # b = sum(r x)
    covariance: np.ndarray  # A^-1
    weights: np.ndarray  # theta = A^-1 b
    pulls: int = 0


@dataclass
class _ArmSlot:
    record: object
    lock: threading.Lock = field(default_factory=threading.Lock)


# ---------------------------------------------------------------------------
# Thompson Sampling
# ---------------------------------------------------------------------------


def prior_beta_arm(arm_id: str, settings: BanditSettings) -> BetaArm:
    return BetaArm(
        arm_id=arm_id,
        successes=settings.prior_successes,
        failures=settings.prior_failures,
    )


def sample_beta_arm(arm: BetaArm, rng: random.Random) -> float:
    return beta_sample(arm.successes, arm.failures, rng)


def observe_beta_arm(arm: BetaArm, success: bool) -> BetaArm:
    if success:
        return BetaArm(arm.arm_id, arm.successes + 1, arm.failures, arm.pulls + 1)
    return BetaArm(arm.arm_id, arm.successes, arm.failures + 1, arm.pulls + 1)


class ThompsonSampler:
    def __init__(
        self,
        arm_ids: Iterable[str] = (),
        config: ExperimentationConfig | None = None,
        seed: int | None = None,
    ) -> None:
        self._settings = (config or default_config).bandit
        self._rng = random.Random(seed)
        self._arms: dict[str, _ArmSlot] = {}
        self._registry_lock = threading.Lock()
        for arm_id in arm_ids:
            self.register_arm(arm_id)

    def register_arm(self, arm_id: str) -> None:
        """Add an arm at its prior. Re-registering an existing arm is a no-op."""
        with self._registry_lock:
            if arm_id in self._arms:
                return
            self._arms[arm_id] = _ArmSlot(record=prior_beta_arm(arm_id, self._settings))
        logger.info("bandit_arm_registered", arm_id=arm_id, kind="thompson")

    def select_arm(self) -> str:
        """Draw one sample per posterior and return the arm with the highest draw."""
        slots = list(self._arms.values())
        if not slots:
            raise InputError("No arms registered")
        best_arm, best_sample = None, -1.0
        for slot in slots:
            draw = sample_beta_arm(slot.record, self._rng)
            if draw > best_sample:
                best_arm, best_sample = slot.record.arm_id, draw
        return best_arm

    def update_arm(self, arm_id: str, success: bool) -> BetaArm:
        slot = self._slot(arm_id)
        with slot.lock:
            slot.record = observe_beta_arm(slot.record, success)
            return slot.record

    def reset_arm(self, arm_id: str) -> None:
        """Administrative reset back to the prior."""
        slot = self._slot(arm_id)
        with slot.lock:
            slot.record = prior_beta_arm(arm_id, self._settings)
        logger.warning("bandit_arm_reset", arm_id=arm_id, kind="thompson")

    def arms(self) -> list[BetaArm]:
        return [slot.record for slot in self._arms.values()]

    def _slot(self, arm_id: str) -> _ArmSlot:
        slot = self._arms.get(arm_id)
        if slot is None:
            raise InputError(f"Unknown bandit arm '{arm_id}'")
        return slot


# ---------------------------------------------------------------------------
# Contextual bandit (LinUCB)
# ---------------------------------------------------------------------------


def prior_linear_arm(arm_id: str, n_features: int, ridge_lambda: float) -> LinearArm:
    precision = np.eye(n_features) * ridge_lambda
    return LinearArm(
        arm_id=arm_id,
        precision=precision,
        reward_vector=np.zeros(n_features),
        covariance=np.eye(n_features) / ridge_lambda,
        weights=np.zeros(n_features),
    )


def ucb_score(arm: LinearArm, x: np.ndarray, alpha: float) -> float:
    mean = float(arm.weights @ x)
    variance = max(float(x @ arm.covariance @ x), 0.0)
    return mean + alpha * float(np.sqrt(variance))


def observe_linear_arm(
    arm: LinearArm, x: np.ndarray, reward: float, max_condition_number: float
) -> LinearArm:
    precision = arm.precision + np.outer(x, x)
    reward_vector = arm.reward_vector + reward * x
    covariance = invert_matrix(precision, max_condition_number)
    return LinearArm(
        arm_id=arm.arm_id,
        precision=precision,
        reward_vector=reward_vector,
        covariance=covariance,
        weights=covariance @ reward_vector,
        pulls=arm.pulls + 1,
    )


class LinUCBBandit:
    def __init__(
        self,
        arm_ids: Iterable[str],
        n_features: int,
        config: ExperimentationConfig | None = None,
    ) -> None:
        if n_features <= 0:
            raise InputError(f"Feature count must be positive, got {n_features}")
        self._settings = (config or default_config).bandit
        if self._settings.ridge_lambda <= 0:
            raise ConfigurationError("Ridge lambda must be positive")
        self._n_features = n_features
        self._arms: dict[str, _ArmSlot] = {}
        self._registry_lock = threading.Lock()
        for arm_id in arm_ids:
            self.register_arm(arm_id)

    @property
    def n_features(self) -> int:
        return self._n_features

    def register_arm(self, arm_id: str) -> None:
        with self._registry_lock:
            if arm_id in self._arms:
                return
            self._arms[arm_id] = _ArmSlot(
                record=prior_linear_arm(arm_id, self._n_features, self._settings.ridge_lambda)
            )
        logger.info("bandit_arm_registered", arm_id=arm_id, kind="linucb")

    def select_arm(self, context: Sequence[float]) -> str:
        """Highest predicted reward plus exploration bonus wins; ties go to
        the earliest registered arm."""
        x = self._vector(context)
        slots = list(self._arms.values())
        if not slots:
            raise InputError("No arms registered")
        best_arm, best_score = None, -np.inf
        for slot in slots:
            score = ucb_score(slot.record, x, self._settings.ucb_alpha)
            if score > best_score:
                best_arm, best_score = slot.record.arm_id, score
        return best_arm

    def update_arm(self, arm_id: str, context: Sequence[float], reward: float) -> LinearArm:
        x = self._vector(context)
        slot = self._slot(arm_id)
        with slot.lock:
            # NumericalInstabilityError propagates; the arm keeps its old state
            slot.record = observe_linear_arm(
                slot.record, x, float(reward), self._settings.max_condition_number
            )
            return slot.record

    def reset_arm(self, arm_id: str) -> None:
        slot = self._slot(arm_id)
        with slot.lock:
            slot.record = prior_linear_arm(arm_id, self._n_features, self._settings.ridge_lambda)
        logger.warning("bandit_arm_reset", arm_id=arm_id, kind="linucb")

    def arms(self) -> list[LinearArm]:
        return [slot.record for slot in self._arms.values()]

    def _vector(self, context: Sequence[float]) -> np.ndarray:
        x = np.asarray(context, dtype=float)
        if x.shape != (self._n_features,):
            raise InputError(
                f"Context must have {self._n_features} features, got shape {x.shape}"
            )
        if not np.all(np.isfinite(x)):
            raise InputError("Context contains non-finite values")
        return x

    def _slot(self, arm_id: str) -> _ArmSlot:
        slot = self._arms.get(arm_id)
        if slot is None:
            raise InputError(f"Unknown bandit arm '{arm_id}'")
        return slot


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class BanditRegistry:
    """Named bandit instances, e.g. one per bandit-mode experiment."""

    def __init__(self, config: ExperimentationConfig | None = None) -> None:
        self._config = config or default_config
        self._bandits: dict[str, ThompsonSampler | LinUCBBandit] = {}
        self._lock = threading.Lock()

    def create_thompson(
        self, name: str, arm_ids: Iterable[str], seed: int | None = None
    ) -> ThompsonSampler:
        with self._lock:
            if name in self._bandits:
                raise InputError(f"Bandit '{name}' already exists")
            bandit = ThompsonSampler(arm_ids, self._config, seed=seed)
            self._bandits[name] = bandit
        return bandit

    def create_linucb(self, name: str, arm_ids: Iterable[str], n_features: int) -> LinUCBBandit:
        with self._lock:
            if name in self._bandits:
                raise InputError(f"Bandit '{name}' already exists")
            bandit = LinUCBBandit(arm_ids, n_features, self._config)
            self._bandits[name] = bandit
        return bandit

    def get(self, name: str) -> ThompsonSampler | LinUCBBandit:
        bandit = self._bandits.get(name)
        if bandit is None:
            raise KeyError(f"Unknown bandit '{name}'")
        return bandit

    def names(self) -> list[str]:
        return list(self._bandits)
