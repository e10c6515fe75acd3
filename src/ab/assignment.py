"""Deterministic A/B experiment assignment.

Assignment is hash-based: given the same (experiment_id, visitor_id) pair
and variant list, the visitor always gets the same variant. No randomness
involved.

The coordinator adds persistence on top: the first decision for a
(visitor, experiment) pair is stored and returned verbatim afterwards, so
editing weights on a running experiment does not move existing visitors.

Concurrency note: get_or_create_assignment is an unguarded
check-then-act. Two requests that both see "no assignment" compute the
same variant (bucketing is deterministic) and both write it, so the
store's last-write-wins is sufficient. Do not add a lock here.
"""

import logging

from src.ab.bucketing import bucket, is_included
from src.ab.experiment import Experiment, Variant
from src.ab.store import AssignmentStore, StoreUnavailableError

logger = logging.getLogger(__name__)


def assign_variant(experiment: Experiment, visitor_id: str) -> Variant | None:
    """Assign a visitor to a variant without touching storage.

    Returns None when the visitor falls outside the experiment's traffic
    allocation.
    """
    if not is_included(visitor_id, experiment.experiment_id, experiment.traffic_percentage):
        return None
    index = bucket(visitor_id, experiment.experiment_id, experiment.weights)
    return experiment.variants[index]


class AssignmentCoordinator:
    def __init__(self, store: AssignmentStore):
        self.store = store

    def get_or_create_assignment(self, visitor_id: str, experiment: Experiment) -> str | None:
        """Return the visitor's variant id, or None if they are not in the experiment.

        A stored assignment is never overwritten while its variant still
        exists. If that variant has since been removed from the experiment,
        the visitor is re-bucketed over the current variants and the stored
        record is replaced.

        Only running experiments assign. Storage failures never propagate:
        an unreadable store leaves the visitor unassigned for this request,
        an unwritable store still returns the freshly computed variant.
        """
        if not experiment.is_running:
            return None

        exp_id = experiment.experiment_id
        try:
            stored = self.store.get(visitor_id, exp_id)
        except StoreUnavailableError as exc:
            logger.warning(
                "Assignment store read failed for %s/%s, serving unassigned: %s",
                visitor_id, exp_id, exc,
            )
            return None

        if stored is not None:
            if experiment.variant(stored) is not None:
                return stored
            # The stored variant was removed from the experiment
            logger.info(
                "Variant %s no longer in %s, re-bucketing %s", stored, exp_id, visitor_id,
            )

        variant = assign_variant(experiment, visitor_id)
        if variant is None:
            return None

        try:
            self.store.put(visitor_id, exp_id, variant.variant_id)
        except StoreUnavailableError as exc:
            # Valid for this request; recomputed (identically) next time
            logger.warning(
                "Assignment store write failed for %s/%s: %s", visitor_id, exp_id, exc,
            )
        return variant.variant_id

    def list_assignments(self, visitor_id: str) -> dict[str, str]:
        """Experiment id -> variant id for everything this visitor is bucketed into."""
        try:
            return dict(self.store.for_visitor(visitor_id))
        except StoreUnavailableError as exc:
            logger.warning("Assignment store read failed for %s: %s", visitor_id, exc)
            return {}

    def assign_all(self, visitor_id: str, experiments: list[Experiment]) -> dict[str, str]:
        assignments = {}
        for experiment in experiments:
            variant_id = self.get_or_create_assignment(visitor_id, experiment)
            if variant_id is not None:
                assignments[experiment.experiment_id] = variant_id
        return assignments
