import logging
from dataclasses import dataclass, field

import yaml

LOGGER = logging.getLogger(__name__)


class WorkflowParseError(Exception):
    """Raised when a downloaded file is not a usable workflow definition."""


@dataclass
class Result:
    total_repositories: int = 0
    total_steps: int = 0
    with_usages: dict = field(default_factory=dict)


def parse_workflow(content):
    """Load workflow YAML and return its jobs mapping."""
    try:
        workflow = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise WorkflowParseError(str(e)) from e

    if workflow is None:
        return {}
    if not isinstance(workflow, dict):
        raise WorkflowParseError(f"expected a mapping, got {type(workflow).__name__}")

    jobs = workflow.get("jobs") or {}
    if not isinstance(jobs, dict):
        raise WorkflowParseError("jobs is not a mapping")
    return jobs


def matching_steps(jobs, action_name):
    """Yield every step whose `uses` starts with the action name."""
    for job in jobs.values():
        if not isinstance(job, dict):
            continue
        steps = job.get("steps") or []
        if not isinstance(steps, list):
            continue
        for step in steps:
            if not isinstance(step, dict):
                continue
            uses = step.get("uses")
            if isinstance(uses, str) and uses.startswith(action_name):
                yield step


def analyze(action_name, configurations):
    """
    Count the steps using `action_name` and the inputs they pass.

    `configurations` is drained completely before the result is returned.
    A configuration that fails to parse still counts as a repository.
    """
    result = Result()
    for config in configurations:
        LOGGER.info("analyzing usage in %s", config.name)
        result.total_repositories += 1
        try:
            jobs = parse_workflow(config.configuration)
        except WorkflowParseError as e:
            LOGGER.warning("could not parse %s: %s", config.name, e)
            continue

        for step in matching_steps(jobs, action_name):
            result.total_steps += 1
            inputs = step.get("with")
            if not isinstance(inputs, dict):
                continue
            for key in inputs:
                key = str(key)
                result.with_usages[key] = result.with_usages.get(key, 0) + 1
    return result
