"""
Structured reconciler errors.

Every error the reconciler reports carries a KNV code so the status written
to RootSync/RepoSync objects can be matched against documentation. Errors of
one cycle are collected in a MultiError; two MultiErrors compare equal when
they hold the same structured errors in the same order, which is what the
retry backoff uses to recognize a repeating failure.
"""

from typing import Dict, Iterable, List, Optional, Sequence


# ============================================================================
# ERROR CODES
# ============================================================================

INTERNAL_ERROR_CODE = "1000"
ILLEGAL_MANAGEMENT_ANNOTATION_CODE = "1005"
OBJECT_PARSE_ERROR_CODE = "1006"
UNKNOWN_KIND_CODE = "1021"
NAME_COLLISION_CODE = "1029"
MISSING_NAME_CODE = "1031"
BAD_SCOPE_CODE = "1058"
MANAGEMENT_CONFLICT_CODE = "1060"
API_SERVER_ERROR_CODE = "2002"
SOURCE_ERROR_CODE = "2004"
APPLIER_ERROR_CODE = "2009"
RESOURCE_ERROR_CODE = "2010"
TRANSIENT_ERROR_CODE = "2016"


class ErrorTaxonomy:
    """
    Table of the KNV codes a reconciler can report.

    The table is built explicitly and handed to whoever needs to document or
    introspect codes; constructing an error never consults it.
    """

    DEFAULT_ENTRIES = {
        INTERNAL_ERROR_CODE: "internal error, the reconciler hit an unexpected state",
        ILLEGAL_MANAGEMENT_ANNOTATION_CODE: "management annotation has an illegal value",
        OBJECT_PARSE_ERROR_CODE: "a file in the source could not be parsed",
        UNKNOWN_KIND_CODE: "an object has no kind or apiVersion",
        NAME_COLLISION_CODE: "two declared objects share the same identity",
        MISSING_NAME_CODE: "an object has no metadata.name",
        BAD_SCOPE_CODE: "a namespace reconciler declared an object outside its namespace",
        MANAGEMENT_CONFLICT_CODE: "the object is already managed by another reconciler",
        API_SERVER_ERROR_CODE: "a request to the API server failed",
        SOURCE_ERROR_CODE: "the source repository could not be read",
        APPLIER_ERROR_CODE: "the applier failed",
        RESOURCE_ERROR_CODE: "applying, pruning or disabling one object failed",
        TRANSIENT_ERROR_CODE: "a transient condition that clears on retry",
    }

    def __init__(self, entries: Optional[Dict[str, str]] = None):
        self._entries: Dict[str, str] = {}
        for code, description in (entries if entries is not None else self.DEFAULT_ENTRIES).items():
            self.register(code, description)

    def register(self, code: str, description: str):
        if code in self._entries:
            raise ValueError(f"duplicate error code KNV{code}")
        self._entries[code] = description

    def describe(self, code: str) -> str:
        return self._entries.get(code, "undocumented error")

    def codes(self) -> List[str]:
        return sorted(self._entries)

    def __contains__(self, code: str) -> bool:
        return code in self._entries


# ============================================================================
# ERROR TYPES
# ============================================================================

class ConfigSyncError(Exception):
    """An error with a KNV code and, optionally, the resources it concerns"""

    def __init__(self, code: str, message: str, resources: Sequence = ()):
        self.code = code
        self.message = message
        self.resources = tuple(resources)
        super().__init__(self.__str__())

    def __str__(self) -> str:
        text = f"KNV{self.code}: {self.message}"
        for resource in self.resources:
            text += f"\n\n{resource}"
        return text

    def _key(self):
        return (type(self).__name__, self.code, self.message, self.resources)

    def __eq__(self, other):
        if not isinstance(other, ConfigSyncError):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())

    def to_status(self) -> dict:
        """Render the error as a ConfigSyncError entry of a status field"""
        entry = {"code": self.code, "errorMessage": str(self)}
        if self.resources:
            entry["resources"] = [_resource_status(resource) for resource in self.resources]
        return entry


def _resource_status(resource) -> dict:
    to_status = getattr(resource, "to_status", None)
    if to_status is None:
        return {"name": str(resource)}
    return to_status()


class ResourceError(ConfigSyncError):
    """Failure scoped to one declared object"""


class ManagementConflictError(ResourceError):
    """The object is owned by another reconciler's inventory"""

    def __init__(self, resource, current_manager: str, conflicting_manager: str):
        self.current_manager = current_manager
        self.conflicting_manager = conflicting_manager
        message = (
            f"The {current_manager!r} reconciler detects a management conflict for a resource "
            f"declared in another repository. Remove the declaration for this resource from "
            f"either the current repository, or the repository managed by {conflicting_manager!r}."
        )
        super().__init__(MANAGEMENT_CONFLICT_CODE, message, (resource,))


class TransientError(ConfigSyncError):
    """A condition expected to clear on a later retry"""


class MultiError(Exception):
    """An ordered collection of ConfigSyncErrors"""

    def __init__(self, errors: Iterable[ConfigSyncError] = ()):
        self._errors: List[ConfigSyncError] = []
        for err in errors:
            self._add(err)
        super().__init__(self.format_single_line())

    def _add(self, err):
        if err is None:
            return
        if isinstance(err, MultiError):
            self._errors.extend(err.errors())
        elif isinstance(err, ConfigSyncError):
            self._errors.append(err)
        else:
            self._errors.append(internal_error(str(err)))

    def errors(self) -> List[ConfigSyncError]:
        return list(self._errors)

    def __len__(self):
        return len(self._errors)

    def __iter__(self):
        return iter(self._errors)

    def __eq__(self, other):
        if not isinstance(other, MultiError):
            return NotImplemented
        return self._errors == other._errors

    def __hash__(self):
        return hash(tuple(self._errors))

    def __str__(self):
        return self.format_single_line()

    def format_single_line(self) -> str:
        if not self._errors:
            return ""
        return f"{len(self._errors)} error(s): " + "; ".join(
            str(err).replace("\n", " ") for err in self._errors
        )


def append(errs, err) -> Optional[MultiError]:
    """
    Combine two errors into a MultiError.

    Either side may be None, a ConfigSyncError, a MultiError, or a plain
    exception (wrapped as an internal error). Returns None when there is
    nothing to report.
    """
    combined = MultiError([errs, err])
    if not combined.errors():
        return None
    return combined


def same_errors(left: Optional[MultiError], right: Optional[MultiError]) -> bool:
    """Structural comparison of two error sets; None equals an empty set"""
    return (left.errors() if left else []) == (right.errors() if right else [])


def to_status(errs: Optional[MultiError]) -> List[dict]:
    if errs is None:
        return []
    return [err.to_status() for err in errs]


# ============================================================================
# CONSTRUCTORS
# ============================================================================

def internal_error(message: str) -> ConfigSyncError:
    return ConfigSyncError(INTERNAL_ERROR_CODE, message)


def api_server_error(err: Exception, message: str) -> ConfigSyncError:
    return ConfigSyncError(API_SERVER_ERROR_CODE, f"{message}: {err}")


def source_error(err: Exception, path: str = "") -> ConfigSyncError:
    text = str(err)
    if path:
        text += f" (path: {path})"
    return ConfigSyncError(SOURCE_ERROR_CODE, text)


def transient_error(err: Exception) -> TransientError:
    return TransientError(TRANSIENT_ERROR_CODE, str(err))


def applier_error(err: Exception) -> ConfigSyncError:
    return ConfigSyncError(APPLIER_ERROR_CODE, str(err))


def large_inventory_error(err: Exception, inventory_id: str) -> ConfigSyncError:
    return ConfigSyncError(
        APPLIER_ERROR_CODE,
        f"too many declared resources causing ResourceGroup {inventory_id} to exceed the size "
        f"limit, split the resources into multiple repositories: {err}",
    )


def resource_error(err: Exception, resource) -> ResourceError:
    return ResourceError(RESOURCE_ERROR_CODE, f"failed to apply {resource}: {err}", (resource,))


def parse_error(code: str, message: str, resources: Sequence = ()) -> ConfigSyncError:
    return ConfigSyncError(code, message, resources)


# ============================================================================
# HEURISTICS
# ============================================================================

REQUEST_TOO_LARGE_MESSAGES = (
    "etcdserver: request is too large",
    "Request entity too large",
    "trying to send message larger than max",
)


def is_request_too_large_error(err: Optional[BaseException]) -> bool:
    if err is None:
        return False
    text = str(err)
    if getattr(err, "status", None) == 413:
        return True
    return any(message in text for message in REQUEST_TOO_LARGE_MESSAGES)
