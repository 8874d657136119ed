from __future__ import annotations

DEPLOYMENT_STATUS_PENDING = "pending"
DEPLOYMENT_STATUS_RUNNING = "running"
DEPLOYMENT_STATUS_SUCCESS = "success"
DEPLOYMENT_STATUS_FAILED = "failed"
DEPLOYMENT_STATUS_DESTROYING = "destroying"
DEPLOYMENT_STATUS_DESTROYED = "destroyed"
DEPLOYMENT_STATUS_DESTROY_FAILED = "destroy_failed"

DEPLOYMENT_STATUSES = (
    DEPLOYMENT_STATUS_PENDING,
    DEPLOYMENT_STATUS_RUNNING,
    DEPLOYMENT_STATUS_SUCCESS,
    DEPLOYMENT_STATUS_FAILED,
    DEPLOYMENT_STATUS_DESTROYING,
    DEPLOYMENT_STATUS_DESTROYED,
    DEPLOYMENT_STATUS_DESTROY_FAILED,
)

# Edges of the deployment state machine. running->running and
# destroying->destroying are step advances within one pipeline.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    DEPLOYMENT_STATUS_PENDING: frozenset({DEPLOYMENT_STATUS_RUNNING}),
    DEPLOYMENT_STATUS_RUNNING: frozenset(
        {DEPLOYMENT_STATUS_RUNNING, DEPLOYMENT_STATUS_SUCCESS, DEPLOYMENT_STATUS_FAILED}
    ),
    DEPLOYMENT_STATUS_SUCCESS: frozenset({DEPLOYMENT_STATUS_DESTROYING}),
    DEPLOYMENT_STATUS_FAILED: frozenset({DEPLOYMENT_STATUS_RUNNING, DEPLOYMENT_STATUS_DESTROYING}),
    DEPLOYMENT_STATUS_DESTROYING: frozenset(
        {
            DEPLOYMENT_STATUS_DESTROYING,
            DEPLOYMENT_STATUS_DESTROYED,
            DEPLOYMENT_STATUS_DESTROY_FAILED,
        }
    ),
    DEPLOYMENT_STATUS_DESTROYED: frozenset({DEPLOYMENT_STATUS_RUNNING}),
    DEPLOYMENT_STATUS_DESTROY_FAILED: frozenset(),
}

PROVISIONABLE_STATUSES = frozenset(
    {DEPLOYMENT_STATUS_PENDING, DEPLOYMENT_STATUS_FAILED, DEPLOYMENT_STATUS_DESTROYED}
)
DESTROYABLE_STATUSES = frozenset({DEPLOYMENT_STATUS_SUCCESS, DEPLOYMENT_STATUS_FAILED})
DELETABLE_STATUSES = frozenset({DEPLOYMENT_STATUS_DESTROYED, DEPLOYMENT_STATUS_FAILED})
ACTIVE_STATUSES = frozenset({DEPLOYMENT_STATUS_RUNNING, DEPLOYMENT_STATUS_DESTROYING})

PIPELINE_PROVISION = "provision"
PIPELINE_DESTROY = "destroy"

STEP_INIT = "init"
STEP_PLAN = "plan"
STEP_APPLY = "apply"
STEP_DESTROY = "destroy"

PROVISION_STEPS = (STEP_INIT, STEP_PLAN, STEP_APPLY)
DESTROY_STEPS = (STEP_INIT, STEP_DESTROY)

LAST_ACTION_CREATED = "created"
LAST_ACTION_COMPLETED = "completed"
LAST_ACTION_DESTROYED = "destroyed"

JOB_STATUS_RUNNING = "running"
JOB_STATUS_DONE = "done"
JOB_STATUS_FAILED = "failed"

# A lease is held from insert until the pipeline ends; there is no queue.
OPEN_JOB_STATUSES = (JOB_STATUS_RUNNING,)
