"""
Typed Exception Hierarchy for the Guardian appeal engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Access decisions are made by humans and executed by machines.  When an
operation fails, the caller has to know exactly which precondition failed
so it can tell the requester, the approver, or an operator what to do next.
Parsing message strings for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example - RIGHT way (what this module enables):
    try:
        resolver.decide(appeal_id, "manager", "bob@example.com", "approve")
    except NotEligibleError as e:
        respond(403, code=e.code, step=e.step_name, approver=e.approver)
    except StepNotActiveError as e:
        respond(409, code=e.code, step=e.step_name)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    GuardianError (base)
    |
    +-- ValidationError                  bad input, never retried
    |   +-- AppealNotFoundError
    |   +-- GrantNotFoundError
    |   +-- ResourceNotFoundError
    |   +-- ProviderNotFoundError
    |   +-- PolicyNotFoundError
    |   +-- IdentityNotFoundError
    |   +-- DuplicateAppealError
    |   |   +-- ExtensionNotEligibleError
    |   +-- StepNotFoundError
    |
    +-- InvalidTransitionError           lifecycle misuse / lost race
    |   +-- StepNotActiveError
    |
    +-- NotEligibleError                 approver not in the eligible set
    |
    +-- PolicyError                      policy/context defect
    |   +-- InvalidExpressionError
    |   +-- AttributeMissingError
    |   +-- ApproverResolutionError
    |   +-- PolicyImmutableError
    |
    +-- ProviderError                    transient external failure
        +-- ProviderTimeoutError
        +-- ProviderGrantFailedError
        +-- ProviderRevokeFailedError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                       | When Raised
-------------|----------------------------|-------------------------------------
Validation   | VALIDATION_ERROR           | Options/parameters rejected
             | APPEAL_NOT_FOUND           | Appeal ID doesn't exist
             | GRANT_NOT_FOUND            | Grant ID doesn't exist
             | RESOURCE_NOT_FOUND         | Resource missing or deleted
             | PROVIDER_NOT_FOUND         | No provider for the resource type
             | POLICY_NOT_FOUND           | Policy ID/version doesn't exist
             | IDENTITY_NOT_FOUND         | Identity lookup has no such user
             | DUPLICATE_APPEAL           | Open appeal already exists
             | EXTENSION_NOT_ELIGIBLE     | Active grant outside extension window
             | STEP_NOT_FOUND             | Appeal has no step with that name
-------------|----------------------------|-------------------------------------
Lifecycle    | INVALID_TRANSITION         | Transition not allowed from status
             | STEP_NOT_ACTIVE            | Decision on a non-active step
             | NOT_ELIGIBLE               | Approver not eligible for the step
-------------|----------------------------|-------------------------------------
Policy       | INVALID_EXPRESSION         | Expression fails the restricted AST
             | ATTRIBUTE_MISSING          | Referenced context path is absent
             | APPROVER_RESOLUTION_FAILED | Approver rule unusable / empty set
             | POLICY_IMMUTABLE           | Stored policy row modified
-------------|----------------------------|-------------------------------------
Provider     | PROVIDER_ERROR             | Provider call raised
             | PROVIDER_TIMEOUT           | Provider call exceeded its timeout
             | PROVIDER_GRANT_FAILED      | Grant retries exhausted
             | PROVIDER_REVOKE_FAILED     | Revoke retries exhausted
"""


class GuardianError(Exception):
    """
    Base exception for all Guardian errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "GUARDIAN_ERROR"


# Validation exceptions


class ValidationError(GuardianError):
    """Input rejected before any state changed."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class AppealNotFoundError(ValidationError):
    """Appeal with given ID was not found."""

    code: str = "APPEAL_NOT_FOUND"

    def __init__(self, appeal_id: str):
        self.appeal_id = appeal_id
        super().__init__(f"Appeal not found: {appeal_id}", field="appeal_id")


class GrantNotFoundError(ValidationError):
    """Grant with given ID was not found."""

    code: str = "GRANT_NOT_FOUND"

    def __init__(self, grant_id: str):
        self.grant_id = grant_id
        super().__init__(f"Grant not found: {grant_id}", field="grant_id")


class ResourceNotFoundError(ValidationError):
    """Resource is unknown to the catalog or has been deleted."""

    code: str = "RESOURCE_NOT_FOUND"

    def __init__(self, resource_id: str, deleted: bool = False):
        self.resource_id = resource_id
        self.deleted = deleted
        state = "deleted" if deleted else "not found"
        super().__init__(f"Resource {state}: {resource_id}", field="resource_id")


class ProviderNotFoundError(ValidationError):
    """No provider capability is registered for the resource type."""

    code: str = "PROVIDER_NOT_FOUND"

    def __init__(self, resource_type: str):
        self.resource_type = resource_type
        super().__init__(
            f"No provider registered for resource type '{resource_type}'",
            field="resource_type",
        )


class PolicyNotFoundError(ValidationError):
    """Policy ID (or the requested version of it) does not exist."""

    code: str = "POLICY_NOT_FOUND"

    def __init__(self, policy_id: str, version: int | None = None):
        self.policy_id = policy_id
        self.version = version
        label = policy_id if version is None else f"{policy_id}@v{version}"
        super().__init__(f"Policy not found: {label}", field="policy_id")


class IdentityNotFoundError(ValidationError):
    """Identity lookup has no record for the given identity."""

    code: str = "IDENTITY_NOT_FOUND"

    def __init__(self, identity: str):
        self.identity = identity
        super().__init__(f"Identity not found: {identity}", field="requester")


class DuplicateAppealError(ValidationError):
    """An open appeal already exists for requester/resource/role."""

    code: str = "DUPLICATE_APPEAL"

    def __init__(
        self,
        requester: str,
        resource_id: str,
        role: str,
        existing_id: str,
        message: str | None = None,
    ):
        self.requester = requester
        self.resource_id = resource_id
        self.role = role
        self.existing_id = existing_id
        super().__init__(message or (
            f"Appeal {existing_id} already open for {requester} on "
            f"{resource_id} (role={role!r})"
        ))


class ExtensionNotEligibleError(DuplicateAppealError):
    """Active access exists and is not yet within the policy's extension window."""

    code: str = "EXTENSION_NOT_ELIGIBLE"

    def __init__(
        self,
        requester: str,
        resource_id: str,
        role: str,
        existing_id: str,
        expires_at: str,
        window_seconds: int,
    ):
        self.expires_at = expires_at
        self.window_seconds = window_seconds
        super().__init__(requester, resource_id, role, existing_id, (
            f"Active appeal {existing_id} for {requester} on {resource_id} "
            f"(role={role!r}) expires at {expires_at}; extension is allowed only "
            f"within {window_seconds}s of expiry"
        ))


class StepNotFoundError(ValidationError):
    """Appeal has no approval step with the given name."""

    code: str = "STEP_NOT_FOUND"

    def __init__(self, appeal_id: str, step_name: str):
        self.appeal_id = appeal_id
        self.step_name = step_name
        super().__init__(
            f"Appeal {appeal_id} has no step named '{step_name}'",
            field="step_name",
        )


# Lifecycle exceptions


class InvalidTransitionError(GuardianError):
    """Operation is not allowed from the appeal's (or grant's) current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, entity_id: str, from_status: str, to_status: str | None = None):
        self.entity_id = entity_id
        self.from_status = from_status
        self.to_status = to_status
        if to_status is None:
            message = f"Operation not allowed on {entity_id} in status '{from_status}'"
        else:
            message = (
                f"Invalid transition for {entity_id}: "
                f"'{from_status}' -> '{to_status}'"
            )
        super().__init__(message)


class StepNotActiveError(InvalidTransitionError):
    """Decision targeted a step that is not the appeal's active step."""

    code: str = "STEP_NOT_ACTIVE"

    def __init__(self, appeal_id: str, step_name: str, step_status: str, appeal_status: str):
        self.appeal_id = appeal_id
        self.step_name = step_name
        self.step_status = step_status
        self.appeal_status = appeal_status
        GuardianError.__init__(
            self,
            f"Step '{step_name}' of appeal {appeal_id} is not active "
            f"(step={step_status}, appeal={appeal_status})",
        )
        self.entity_id = appeal_id
        self.from_status = appeal_status
        self.to_status = None


class NotEligibleError(GuardianError):
    """Approver is not in the step's resolved eligible set."""

    code: str = "NOT_ELIGIBLE"

    def __init__(self, appeal_id: str, step_name: str, approver: str):
        self.appeal_id = appeal_id
        self.step_name = step_name
        self.approver = approver
        super().__init__(
            f"{approver} is not an eligible approver for step "
            f"'{step_name}' of appeal {appeal_id}"
        )


# Policy exceptions


class PolicyError(GuardianError):
    """Base exception for policy or evaluation-context defects."""

    code: str = "POLICY_ERROR"


class InvalidExpressionError(PolicyError):
    """Expression failed parsing or the restricted-AST check."""

    code: str = "INVALID_EXPRESSION"

    def __init__(self, expression: str, reasons: list[str]):
        self.expression = expression
        self.reasons = reasons
        super().__init__(
            f"Invalid expression {expression!r}: " + "; ".join(reasons)
        )


class AttributeMissingError(PolicyError):
    """Expression referenced a context path that is absent at evaluation."""

    code: str = "ATTRIBUTE_MISSING"

    def __init__(self, expression: str, path: str):
        self.expression = expression
        self.path = path
        super().__init__(f"Attribute '{path}' missing while evaluating {expression!r}")


class ApproverResolutionError(PolicyError):
    """Approver rule produced an unusable value or an empty required set."""

    code: str = "APPROVER_RESOLUTION_FAILED"

    def __init__(self, step_name: str, reason: str):
        self.step_name = step_name
        self.reason = reason
        super().__init__(f"Cannot resolve approvers for step '{step_name}': {reason}")


class PolicyImmutableError(PolicyError):
    """A stored policy version was modified or deleted."""

    code: str = "POLICY_IMMUTABLE"

    def __init__(self, policy_id: str, version: int, reason: str):
        self.policy_id = policy_id
        self.version = version
        self.reason = reason
        super().__init__(f"Policy {policy_id}@v{version} is immutable: {reason}")


# Provider exceptions


class ProviderError(GuardianError):
    """Provider call failed.  Treated as transient and retried."""

    code: str = "PROVIDER_ERROR"

    def __init__(self, resource_type: str, operation: str, reason: str):
        self.resource_type = resource_type
        self.operation = operation
        self.reason = reason
        super().__init__(f"Provider {operation} failed for '{resource_type}': {reason}")


class ProviderTimeoutError(ProviderError):
    """Provider call exceeded the configured timeout."""

    code: str = "PROVIDER_TIMEOUT"

    def __init__(self, resource_type: str, operation: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            resource_type, operation, f"timed out after {timeout_seconds}s",
        )


class ProviderGrantFailedError(ProviderError):
    """Provider grant failed after all retries; appeal stays approved."""

    code: str = "PROVIDER_GRANT_FAILED"

    def __init__(self, appeal_id: str, resource_type: str, attempts: int, reason: str):
        self.appeal_id = appeal_id
        self.attempts = attempts
        super().__init__(resource_type, "grant", f"{reason} (after {attempts} attempts)")


class ProviderRevokeFailedError(ProviderError):
    """Provider revoke failed after all retries; grant flagged for attention."""

    code: str = "PROVIDER_REVOKE_FAILED"

    def __init__(self, grant_id: str, resource_type: str, attempts: int, reason: str):
        self.grant_id = grant_id
        self.attempts = attempts
        super().__init__(resource_type, "revoke", f"{reason} (after {attempts} attempts)")
