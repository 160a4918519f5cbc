"""Generic observe, diff, converge engine shared by every target entity type."""

import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Generic, Iterable, Optional, Tuple, TypeVar

from loguru import logger
from pydantic import BaseModel, Field

from ..api.client import Transport
from ..api.exceptions import TARGET, ConflictError, NotFoundError

DesiredT = TypeVar('DesiredT', bound=BaseModel)


class EnsureOutcome(str, Enum):
    """What :meth:`Reconciler.ensure` did to the target."""

    CREATED = 'created'
    UPDATED = 'updated'
    UNCHANGED = 'unchanged'
    SKIPPED = 'skipped'


class EnsureOptions(BaseModel):
    """Override flags for a single ensure call.

    The same rule applies to every entity type: ``force`` updates a
    differing entity in place where the type supports in-place update, and
    ``replace`` deletes and recreates it where the type supports deletion.
    An override the type cannot honour fails with a conflict.
    """

    force: bool = Field(default=False, description='Update differing entity in place')
    replace: bool = Field(
        default=False, description='Delete and recreate differing entity'
    )
    dry_run: bool = Field(default=False, description='Report without mutating')

    class Config:
        """Pydantic configuration."""

        frozen = True


class EnsureResult(BaseModel):
    """Result of reconciling one target entity."""

    entity_type: str = Field(..., description='Type of entity reconciled')
    key: str = Field(..., description='Target identity of the entity')
    outcome: EnsureOutcome = Field(..., description='What was done')
    entity: Optional[Dict[str, Any]] = Field(
        default=None, description='Target entity after reconciliation'
    )
    differences: Dict[str, Any] = Field(
        default_factory=dict, description='Field -> {desired, observed}'
    )
    replaced: bool = Field(default=False, description='Entity was deleted and recreated')
    reason: Optional[str] = Field(default=None, description='Why it was skipped')
    mutations: int = Field(default=0, description='Mutating calls issued')
    dry_run: bool = Field(default=False, description='No mutation was issued')


class EntityHandler(ABC, Generic[DesiredT]):
    """Capabilities of one target entity type: get, diff, create, update, delete.

    Subclasses implement the platform calls; :class:`Reconciler` owns the
    control flow so compare/create/update logic is never duplicated.
    """

    entity_type = 'entity'
    supports_update = True
    supports_delete = True
    # Fields the server generates; never part of the comparison
    server_fields: Tuple[str, ...] = (
        'id',
        'url',
        '_links',
        'revision',
        'lastUpdateTime',
    )

    def __init__(self, transport: Transport):
        """Initialize handler.

        Args:
            transport: Shared transport
        """
        self.transport = transport
        self.logger = logger.bind(component=self.__class__.__name__)

    @abstractmethod
    def key(self, desired: DesiredT) -> str:
        """Stable identity of the target entity (used for locking and messages)."""

    @abstractmethod
    def get(self, desired: DesiredT) -> Optional[Dict[str, Any]]:
        """Fetch the observed entity, or None when it does not exist."""

    @abstractmethod
    def create(self, desired: DesiredT) -> Dict[str, Any]:
        """Create the entity and return it."""

    def update(self, desired: DesiredT, observed: Dict[str, Any]) -> Dict[str, Any]:
        """Update the entity in place and return it."""
        raise NotImplementedError(f'{self.entity_type} cannot be updated in place')

    def delete(self, observed: Dict[str, Any]) -> None:
        """Delete the observed entity."""
        raise NotImplementedError(f'{self.entity_type} cannot be deleted')

    def skip_reason(self, desired: DesiredT) -> Optional[str]:
        """Reason to skip this entity entirely, or None to reconcile it."""
        return None

    def desired_fields(self, desired: DesiredT) -> Dict[str, Any]:
        """Comparable projection of the desired state."""
        return {}

    def observed_fields(self, observed: Dict[str, Any]) -> Dict[str, Any]:
        """Comparable projection of the observed state."""
        return {
            k: v for k, v in observed.items() if k not in self.server_fields
        }

    def diff(self, desired: DesiredT, observed: Dict[str, Any]) -> Dict[str, Any]:
        """Fields whose desired value differs from the observed one.

        Only fields present in the desired projection are compared, and a
        desired value of None leaves that field unmanaged, so server-generated
        or unmanaged fields never cause a difference.
        """
        wanted = self.desired_fields(desired)
        actual = self.observed_fields(observed)
        differences = {}
        for name, value in wanted.items():
            if value is None:
                continue
            if normalize_value(value) != normalize_value(actual.get(name)):
                differences[name] = {'desired': value, 'observed': actual.get(name)}
        return differences


def normalize_value(value: Any) -> Any:
    """Collapse representations the platforms treat as equal."""
    if value == '':
        return None
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        return {k: normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_value(v) for v in value]
    return value


class Reconciler:
    """Drives :class:`EntityHandler` implementations to convergence.

    At most one ``ensure`` runs at a time per target entity key.
    """

    def __init__(self):
        """Initialize reconciler."""
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self.logger = logger.bind(component='Reconciler')

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def ensure(
        self,
        handler: EntityHandler,
        desired: BaseModel,
        options: Optional[EnsureOptions] = None,
    ) -> EnsureResult:
        """Converge one target entity towards the desired state.

        Args:
            handler: Entity type capabilities
            desired: Desired state
            options: Override flags

        Returns:
            Result with the outcome and the target entity

        Raises:
            ConflictError: Observed state differs and no usable override was given
            PlatformAPIError: Any other transport failure
        """
        options = options or EnsureOptions()
        key = handler.key(desired)
        label = f'{handler.entity_type} {key}'

        with self._lock_for(f'{handler.entity_type}:{key}'):
            reason = handler.skip_reason(desired)
            if reason:
                self.logger.info(f'Skipping {label}: {reason}')
                return self._result(handler, key, EnsureOutcome.SKIPPED, reason=reason)

            try:
                observed = handler.get(desired)
            except NotFoundError:
                observed = None

            if observed is None:
                if options.dry_run:
                    return self._result(
                        handler, key, EnsureOutcome.CREATED, dry_run=True
                    )
                self.logger.info(f'Creating {label}')
                entity = handler.create(desired)
                return self._result(
                    handler, key, EnsureOutcome.CREATED, entity=entity, mutations=1
                )

            differences = handler.diff(desired, observed)
            if not differences:
                self.logger.debug(f'{label} already matches desired state')
                return self._result(
                    handler, key, EnsureOutcome.UNCHANGED, entity=observed
                )

            fields = ', '.join(sorted(differences))

            if options.replace:
                if not handler.supports_delete:
                    raise self._conflict(label, fields, 'it cannot be deleted')
                if options.dry_run:
                    return self._result(
                        handler, key, EnsureOutcome.CREATED, differences=differences,
                        replaced=True, dry_run=True,
                    )
                self.logger.warning(f'Replacing {label} (differs in: {fields})')
                handler.delete(observed)
                entity = handler.create(desired)
                return self._result(
                    handler, key, EnsureOutcome.CREATED, entity=entity,
                    differences=differences, replaced=True, mutations=2,
                )

            if options.force:
                if not handler.supports_update:
                    raise self._conflict(label, fields, 'it cannot be updated in place')
                if options.dry_run:
                    return self._result(
                        handler, key, EnsureOutcome.UPDATED, differences=differences,
                        dry_run=True,
                    )
                self.logger.info(f'Updating {label} in place (differs in: {fields})')
                entity = handler.update(desired, observed)
                return self._result(
                    handler, key, EnsureOutcome.UPDATED, entity=entity,
                    differences=differences, mutations=1,
                )

            raise self._conflict(label, fields, 'no override flag was given')

    def ensure_all(
        self,
        handler: EntityHandler,
        desired_items: Iterable[BaseModel],
        options: Optional[EnsureOptions] = None,
    ) -> list:
        """Ensure several entities of one type; stops at the first failure."""
        return [self.ensure(handler, desired, options) for desired in desired_items]

    @staticmethod
    def _conflict(label: str, fields: str, why: str) -> ConflictError:
        return ConflictError(
            f'{label} exists and differs from the desired state in: {fields}; '
            f'not changed because {why}',
            side=TARGET,
            endpoint=label,
            status_code=409,
        )

    @staticmethod
    def _result(
        handler: EntityHandler, key: str, outcome: EnsureOutcome, **kwargs
    ) -> EnsureResult:
        return EnsureResult(
            entity_type=handler.entity_type, key=key, outcome=outcome, **kwargs
        )
