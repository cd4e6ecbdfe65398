"""
Error Taxonomy

Exception hierarchy shared by the dataset generator and the aggregate cache:
- DatagenError (base, carries structured details)
- ParentNotFoundError
- ConstraintViolation
- BatchCommitError
- AggregateNotReady
- RefreshInProgress
- UnknownAggregateError
"""

from typing import Any, Dict, Optional, Tuple


class DatagenError(Exception):
    """Base class for all datagen errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used by logs and the API"""
        return {
            "error": type(self).__name__,
            "message": self.message,
            **self.details,
        }


class ParentNotFoundError(DatagenError):
    """
    Parent rows required by a dependent entity are absent.

    Raised before any dependent row is generated, either because the parent
    table is empty or because an explicit id range has gaps.
    """

    def __init__(
        self,
        entity: str,
        parent: str,
        id_range: Optional[Tuple[int, int]] = None,
        message: Optional[str] = None,
    ):
        if id_range is not None:
            msg = message or (
                f"Cannot generate {entity}: {parent} ids "
                f"{id_range[0]}..{id_range[1]} are not all present"
            )
        else:
            msg = message or f"Cannot generate {entity}: no {parent} rows exist"
        super().__init__(
            msg,
            details={"entity": entity, "parent": parent, "id_range": id_range},
        )
        self.entity = entity
        self.parent = parent
        self.id_range = id_range


class ConstraintViolation(DatagenError):
    """A generated row would break a positivity, range or uniqueness rule."""

    def __init__(
        self,
        rule: str,
        row: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
    ):
        super().__init__(
            message or f"Generated row violates constraint '{rule}'",
            details={"rule": rule, "row": row},
        )
        self.rule = rule
        self.row = row


class BatchCommitError(DatagenError):
    """
    A transactional batch failed and its reduced-size retry failed too.

    Generation halts. ``rows_committed`` counts the rows already durable for
    the entity so the caller can resume with ``resume_from``.
    """

    def __init__(
        self,
        entity: str,
        rows_committed: int,
        batch_size: int,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            f"Batch insert into {entity} failed after retry; "
            f"{rows_committed} rows committed",
            details={
                "entity": entity,
                "rows_committed": rows_committed,
                "batch_size": batch_size,
                "cause": str(cause) if cause else None,
            },
        )
        self.entity = entity
        self.rows_committed = rows_committed
        self.batch_size = batch_size
        self.cause = cause


class AggregateNotReady(DatagenError):
    """Read requested before the first successful refresh."""

    def __init__(self, name: str):
        super().__init__(
            f"Aggregate '{name}' has no snapshot; refresh it first",
            details={"aggregate": name},
        )
        self.name = name


class RefreshInProgress(DatagenError):
    """
    Informational: a refresh of the same aggregate is already running.

    Callers may wait for it or proceed with the current snapshot.
    """

    def __init__(self, name: str):
        super().__init__(
            f"Aggregate '{name}' is already being refreshed",
            details={"aggregate": name},
        )
        self.name = name


class UnknownAggregateError(DatagenError):
    """No aggregate is registered under the requested name."""

    def __init__(self, name: str):
        super().__init__(
            f"Unknown aggregate: {name}",
            details={"aggregate": name},
        )
        self.name = name
