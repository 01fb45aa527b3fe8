from __future__ import annotations

from typing import Literal


JobKind = Literal["generation", "training", "upscale"]

JOB_KIND_GENERATION = "generation"
JOB_KIND_TRAINING = "training"
JOB_KIND_UPSCALE = "upscale"

# Provider job lifecycle shared by generation, training and upscale runs.
JOB_STARTING = "starting"
JOB_PROCESSING = "processing"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"

JOB_TERMINAL_STATES = frozenset({JOB_SUCCEEDED, JOB_FAILED})
JOB_TRANSITIONS: dict[str, frozenset[str]] = {
    JOB_STARTING: frozenset({JOB_PROCESSING, JOB_SUCCEEDED, JOB_FAILED}),
    JOB_PROCESSING: frozenset({JOB_SUCCEEDED, JOB_FAILED}),
    JOB_SUCCEEDED: frozenset(),
    JOB_FAILED: frozenset(),
}

# Workspace (fine-tuning target) lifecycle.
WORKSPACE_NOT_CREATED = "not_created"
WORKSPACE_PROCESSING = "processing"
WORKSPACE_SUCCEEDED = "succeeded"
WORKSPACE_FAILED = "failed"

WORKSPACE_TRANSITIONS: dict[str, frozenset[str]] = {
    WORKSPACE_NOT_CREATED: frozenset({WORKSPACE_PROCESSING}),
    # processing -> not_created releases a reservation when submission fails.
    WORKSPACE_PROCESSING: frozenset({WORKSPACE_SUCCEEDED, WORKSPACE_FAILED, WORKSPACE_NOT_CREATED}),
    WORKSPACE_SUCCEEDED: frozenset(),
    WORKSPACE_FAILED: frozenset(),
}

# Upscale status tracked on the parent generation job.
UPSCALE_NO = "NO"
UPSCALE_PENDING = "PENDING"
UPSCALE_PROCESSED = "PROCESSED"

UPSCALE_TRANSITIONS: dict[str, frozenset[str]] = {
    UPSCALE_NO: frozenset({UPSCALE_PENDING}),
    # PENDING -> NO rolls back a failed submission or a failed provider run.
    UPSCALE_PENDING: frozenset({UPSCALE_PROCESSED, UPSCALE_NO}),
    UPSCALE_PROCESSED: frozenset(),
}

# Provider status vocabulary mapped onto the job lifecycle.
PROVIDER_STATUS_MAP: dict[str, str] = {
    "starting": JOB_STARTING,
    "processing": JOB_PROCESSING,
    "succeeded": JOB_SUCCEEDED,
    "failed": JOB_FAILED,
    "canceled": JOB_FAILED,
    "cancelled": JOB_FAILED,
}

PAYMENT_PURPOSE_TOP_UP = "top_up"
PAYMENT_PURPOSE_WORKSPACE_UNLOCK = "workspace_unlock"
PAYMENT_PURPOSES = frozenset({PAYMENT_PURPOSE_TOP_UP, PAYMENT_PURPOSE_WORKSPACE_UNLOCK})
