"""
Amazon ECS implementation of :class:`RemoteTaskService`.

Credentials come from the default boto3 chain (environment, profile,
instance role).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, List, Mapping, Optional, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from taskfleet.core.entities.host import HostInstance, HostStatus
from taskfleet.core.entities.resources import ContainerResources
from taskfleet.core.entities.template import TaskTemplate
from taskfleet.core.entities.types import RemoteTask, RunFailure, RunTaskResult, TaskDefinition
from taskfleet.core.errors import RemoteServiceError
from taskfleet.core.remote.base import RemoteTaskService

logger = logging.getLogger(__name__)

# describe_container_instances / describe_instances accept at most 100 ids
_DESCRIBE_BATCH = 100


@contextmanager
def _remote_call(operation: str) -> Iterator[None]:
    try:
        yield
    except ClientError as exc:
        error = exc.response.get("Error", {})
        raise RemoteServiceError(operation, error.get("Message", str(exc)), code=error.get("Code")) from exc
    except BotoCoreError as exc:
        raise RemoteServiceError(operation, str(exc)) from exc


def _chunks(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class EcsTaskService(RemoteTaskService):
    """ECS + Auto Scaling + EC2 clients bound to a single cluster."""

    def __init__(
        self,
        cluster: str,
        *,
        region: Optional[str] = None,
        session: Optional[boto3.session.Session] = None,
        ecs_client: Any = None,
        autoscaling_client: Any = None,
        ec2_client: Any = None,
    ):
        self.cluster = cluster
        self.region = region
        session = session or boto3.session.Session(region_name=region)
        with _remote_call("create_client"):
            self.ecs = ecs_client or session.client("ecs")
            self.autoscaling = autoscaling_client or session.client("autoscaling")
            self.ec2 = ec2_client or session.client("ec2")
        logger.info("ECS service bound to cluster %s (region=%s)", cluster, region or session.region_name)

    # ------------------------------------------------------------------
    # Task definitions

    def find_definition(self, family_or_arn: str) -> Optional[TaskDefinition]:
        try:
            response = self.ecs.describe_task_definition(taskDefinition=family_or_arn)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code == "ClientException":
                logger.info("No existing task definition found for family or ARN: %s", family_or_arn)
                return None
            raise RemoteServiceError("describe_task_definition", str(exc), code=code) from exc
        except BotoCoreError as exc:
            raise RemoteServiceError("describe_task_definition", str(exc)) from exc
        return TaskDefinition.from_api(response["taskDefinition"])

    def register_definition(self, request: Mapping[str, Any]) -> TaskDefinition:
        with _remote_call("register_task_definition"):
            response = self.ecs.register_task_definition(**request)
        return TaskDefinition.from_api(response["taskDefinition"])

    # ------------------------------------------------------------------
    # Tasks

    def run_task(
        self,
        definition: TaskDefinition,
        template: TaskTemplate,
        command: Sequence[str],
        environment: Mapping[str, str],
    ) -> RunTaskResult:
        container_name = definition.agent_container_name
        logger.debug(
            "Found %d container definition(s), assuming first container is the agent: %s",
            len(definition.container_definitions),
            container_name,
        )
        request: dict = {
            "cluster": self.cluster,
            "taskDefinition": definition.arn,
            "launchType": template.launch_type,
            "overrides": {
                "containerOverrides": [
                    {
                        "name": container_name,
                        "command": list(command),
                        "environment": [{"name": k, "value": v} for k, v in environment.items()],
                    }
                ]
            },
        }
        if template.is_serverless:
            request["networkConfiguration"] = {
                "awsvpcConfiguration": {
                    "subnets": list(template.subnets or []),
                    "securityGroups": list(template.security_groups or []),
                    "assignPublicIp": "ENABLED" if template.assign_public_ip else "DISABLED",
                }
            }
            if template.platform_version:
                request["platformVersion"] = template.platform_version
        if template.tags:
            request["tags"] = [{"key": str(k), "value": str(v)} for k, v in sorted(template.tags.items())]

        with _remote_call("run_task"):
            response = self.ecs.run_task(**request)
        return RunTaskResult(
            tasks=[RemoteTask.from_api(task) for task in response.get("tasks") or []],
            failures=[
                RunFailure(reason=item.get("reason", ""), arn=item.get("arn"))
                for item in response.get("failures") or []
            ],
        )

    def describe_task(self, task_id: str, cluster: Optional[str] = None) -> Optional[RemoteTask]:
        with _remote_call("describe_tasks"):
            response = self.ecs.describe_tasks(cluster=cluster or self.cluster, tasks=[task_id])
        tasks = response.get("tasks") or []
        if not tasks:
            return None
        return RemoteTask.from_api(tasks[0])

    def stop_task(self, task_id: str, cluster: Optional[str] = None) -> None:
        logger.info("Stopping task %s in cluster %s", task_id, cluster or self.cluster)
        with _remote_call("stop_task"):
            self.ecs.stop_task(cluster=cluster or self.cluster, task=task_id, reason="Stopped by TaskFleet")

    # ------------------------------------------------------------------
    # Hosts

    def list_hosts(self, status: Optional[HostStatus] = None) -> List[str]:
        host_ids: List[str] = []
        kwargs: dict = {"cluster": self.cluster}
        if status is not None:
            kwargs["status"] = HostStatus(status).value
        while True:
            with _remote_call("list_container_instances"):
                response = self.ecs.list_container_instances(**kwargs)
            host_ids.extend(response.get("containerInstanceArns") or [])
            next_token = response.get("nextToken")
            if not next_token:
                return host_ids
            kwargs["nextToken"] = next_token

    def describe_hosts(self, host_ids: Sequence[str]) -> List[HostInstance]:
        instances: List[dict] = []
        for batch in _chunks(list(host_ids), _DESCRIBE_BATCH):
            with _remote_call("describe_container_instances"):
                response = self.ecs.describe_container_instances(cluster=self.cluster, containerInstances=list(batch))
            instances.extend(response.get("containerInstances") or [])

        launch_times = self._launch_times([item.get("ec2InstanceId") for item in instances if item.get("ec2InstanceId")])
        hosts: List[HostInstance] = []
        for item in instances:
            try:
                status = HostStatus(item.get("status", HostStatus.INACTIVE.value))
            except ValueError:
                status = HostStatus.INACTIVE
            instance_id = item.get("ec2InstanceId")
            hosts.append(
                HostInstance(
                    host_id=item["containerInstanceArn"],
                    instance_id=instance_id,
                    status=status,
                    pending_tasks=int(item.get("pendingTasksCount", 0)),
                    running_tasks=int(item.get("runningTasksCount", 0)),
                    launch_time=launch_times.get(instance_id) or item.get("registeredAt"),
                    remaining=ContainerResources.from_remaining(item.get("remainingResources") or []),
                )
            )
        return hosts

    def _launch_times(self, instance_ids: List[str]) -> dict:
        launch_times: dict = {}
        for batch in _chunks(instance_ids, _DESCRIBE_BATCH):
            with _remote_call("describe_instances"):
                response = self.ec2.describe_instances(InstanceIds=list(batch))
            for reservation in response.get("Reservations") or []:
                for instance in reservation.get("Instances") or []:
                    launch_times[instance["InstanceId"]] = instance.get("LaunchTime")
        return launch_times

    def set_host_draining(self, host_id: str) -> None:
        with _remote_call("update_container_instances_state"):
            self.ecs.update_container_instances_state(
                cluster=self.cluster,
                containerInstances=[host_id],
                status=HostStatus.DRAINING.value,
            )

    def protect_new_hosts(self, group: str) -> bool:
        with _remote_call("describe_auto_scaling_groups"):
            response = self.autoscaling.describe_auto_scaling_groups(AutoScalingGroupNames=[group])
        groups = response.get("AutoScalingGroups") or []
        if not groups:
            raise RemoteServiceError("describe_auto_scaling_groups", f"auto scaling group {group} not found")
        if groups[0].get("NewInstancesProtectedFromScaleIn"):
            return False
        with _remote_call("update_auto_scaling_group"):
            self.autoscaling.update_auto_scaling_group(
                AutoScalingGroupName=group,
                NewInstancesProtectedFromScaleIn=True,
            )
        return True

    def terminate_host(self, instance_id: str, group: str) -> None:
        with _remote_call("set_instance_protection"):
            self.autoscaling.set_instance_protection(
                AutoScalingGroupName=group,
                InstanceIds=[instance_id],
                ProtectedFromScaleIn=False,
            )
        with _remote_call("terminate_instance_in_auto_scaling_group"):
            self.autoscaling.terminate_instance_in_auto_scaling_group(
                InstanceId=instance_id,
                ShouldDecrementDesiredCapacity=True,
            )
