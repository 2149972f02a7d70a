"""Deployment artifact bucket and who may touch it."""

from __future__ import annotations

from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict

from websocket_infra.config import ARTIFACT_EXPIRATION_DAYS, EnvironmentSettings

READ_ACTIONS = ("s3:GetObject*", "s3:GetBucket*", "s3:List*")
PUT_ACTIONS = ("s3:PutObject", "s3:PutObjectLegalHold", "s3:PutObjectRetention",
               "s3:PutObjectTagging", "s3:PutObjectVersionTagging", "s3:Abort*")

ANONYMOUS = "*"


class BucketGrant(BaseModel):
    model_config = ConfigDict(frozen=True)

    principal: str
    actions: Tuple[str, ...]

    @property
    def allows_read(self) -> bool:
        return any(a.startswith("s3:GetObject") for a in self.actions)

    @property
    def allows_write(self) -> bool:
        return "s3:PutObject" in self.actions


class ArtifactStoreSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    bucket_name: str
    retain_on_delete: bool = True
    versioned: bool = False
    expiration_days: int = ARTIFACT_EXPIRATION_DAYS
    lifecycle_rule_id: str = "DeleteOldDeployments"
    grants: Tuple[BucketGrant, ...] = ()

    def can_read(self, principal: Optional[str]) -> bool:
        if principal in (None, ANONYMOUS):
            # public access block overrides any grant to everyone
            return False
        return any(g.principal == principal and g.allows_read for g in self.grants)

    def can_write(self, principal: Optional[str]) -> bool:
        if principal in (None, ANONYMOUS):
            return False
        return any(g.principal == principal and g.allows_write for g in self.grants)


def artifact_store_spec(
    settings: EnvironmentSettings, reader: str, account: str = "${AWS::AccountId}"
) -> ArtifactStoreSpec:
    """
    *reader* is the logical id of the compute role; the optional deployer
    role from settings is the only writer.
    """
    grants = [BucketGrant(principal=reader, actions=READ_ACTIONS)]
    if settings.deployer_role_arn:
        grants.append(BucketGrant(principal=settings.deployer_role_arn, actions=PUT_ACTIONS))

    return ArtifactStoreSpec(
        bucket_name=f"{settings.resource_name('deployments')}-{account}",
        grants=tuple(grants),
    )
