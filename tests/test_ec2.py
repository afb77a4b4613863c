"""Tests for the boto3 EC2 provider."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from aws_mock import MockSession, client_error
from kube_mock import DEFAULT_SPEC

from ec2_operator.ec2 import Ec2Provider, ProviderError, build_tags
from ec2_operator.models import (
    OWNER_TAG_KEY,
    OWNER_UID_TAG_KEY,
    Ec2InstanceSpec,
    InstanceState,
    ObjectKey,
)

OWNER = ObjectKey("team-a", "web")


@pytest.fixture
def spec() -> Ec2InstanceSpec:
    return Ec2InstanceSpec.model_validate(DEFAULT_SPEC)


@pytest.fixture
def session() -> MockSession:
    return MockSession(region_name="us-east-1")


@pytest.fixture
def provider(session: MockSession) -> Ec2Provider:
    return Ec2Provider("eu-central-1", session=session)


class TestCreate:
    """RunInstances."""

    def test_create_launches_one_tagged_instance(
        self, provider: Ec2Provider, session: MockSession, spec: Ec2InstanceSpec
    ) -> None:
        created = provider.create(spec, OWNER)

        client = session.clients["eu-west-1"]
        call = client.run_calls[0]
        assert call["MinCount"] == 1
        assert call["MaxCount"] == 1
        assert call["ImageId"] == "ami-0123456789abcdef0"
        assert call["InstanceType"] == "t3.micro"
        assert call["KeyName"] == "ops-key"
        assert call["SubnetId"] == "subnet-0abc"

        tags = {t["Key"]: t["Value"] for t in call["TagSpecifications"][0]["Tags"]}
        assert tags == {"Name": "web", "team": "platform", OWNER_TAG_KEY: "team-a/web"}

        assert created.instance_id in client.instances
        assert created.state == InstanceState.PENDING.value
        assert created.private_ip == "10.0.1.1"
        assert created.public_ip == ""

    def test_optional_parameters_are_omitted(
        self, provider: Ec2Provider, session: MockSession
    ) -> None:
        spec = Ec2InstanceSpec(image_id="ami-1", instance_type="t3.nano")

        provider.create(spec, OWNER)

        # Falls back to the configured default region
        call = session.clients["eu-central-1"].run_calls[0]
        assert "KeyName" not in call
        assert "SubnetId" not in call

    def test_session_region_is_last_resort(self, session: MockSession) -> None:
        provider = Ec2Provider(session=session)

        provider.create(Ec2InstanceSpec(image_id="ami-1", instance_type="t3.nano"), OWNER)

        assert list(session.clients) == ["us-east-1"]

    def test_no_region_at_all_raises(self) -> None:
        provider = Ec2Provider(session=MockSession(region_name=None))
        spec = Ec2InstanceSpec(image_id="ami-1", instance_type="t3.nano")

        with pytest.raises(ProviderError):
            provider.create(spec, OWNER)

    def test_client_error_is_wrapped_with_code(
        self, provider: Ec2Provider, session: MockSession, spec: Ec2InstanceSpec
    ) -> None:
        session.client("ec2", region_name="eu-west-1").fail_with = client_error(
            "InsufficientInstanceCapacity", "RunInstances"
        )

        with pytest.raises(ProviderError) as exc_info:
            provider.create(spec, OWNER)

        assert exc_info.value.code == "InsufficientInstanceCapacity"

    def test_wait_until_running_refreshes_addresses(
        self, session: MockSession, spec: Ec2InstanceSpec
    ) -> None:
        provider = Ec2Provider(session=session, instance_wait_seconds=12)

        created = provider.create(spec, OWNER)

        client = session.clients["eu-west-1"]
        assert client.waiter.calls[0]["WaiterConfig"] == {"Delay": 5, "MaxAttempts": 3}
        assert created.state == InstanceState.RUNNING.value
        assert created.public_ip == "54.1.2.3"

    def test_wait_timeout_keeps_launch_result(
        self, session: MockSession, spec: Ec2InstanceSpec
    ) -> None:
        """The instance exists; losing its id would orphan it."""
        provider = Ec2Provider(session=session, instance_wait_seconds=5)
        session.client("ec2", region_name="eu-west-1").waiter_times_out = True

        created = provider.create(spec, OWNER)

        assert created.instance_id.startswith("i-")
        assert created.state == InstanceState.PENDING.value


class TestIdempotentCreate:
    """A retried create never launches a second instance."""

    def test_client_token_and_uid_tag_are_sent(
        self, provider: Ec2Provider, session: MockSession, spec: Ec2InstanceSpec
    ) -> None:
        provider.create(spec, OWNER, uid="uid-1", client_token="uid-1-7")

        call = session.clients["eu-west-1"].run_calls[0]
        tags = {t["Key"]: t["Value"] for t in call["TagSpecifications"][0]["Tags"]}
        assert call["ClientToken"] == "uid-1-7"
        assert tags[OWNER_UID_TAG_KEY] == "uid-1"

    def test_client_token_is_optional(
        self, provider: Ec2Provider, session: MockSession, spec: Ec2InstanceSpec
    ) -> None:
        provider.create(spec, OWNER)

        assert "ClientToken" not in session.clients["eu-west-1"].run_calls[0]

    def test_owned_live_instance_is_adopted(
        self, provider: Ec2Provider, session: MockSession, spec: Ec2InstanceSpec
    ) -> None:
        first = provider.create(spec, OWNER, uid="uid-1", client_token="uid-1-7")

        second = provider.create(spec, OWNER, uid="uid-1", client_token="uid-1-7")

        client = session.clients["eu-west-1"]
        assert second.instance_id == first.instance_id
        assert len(client.run_calls) == 1
        filters = {f["Name"]: f["Values"] for f in client.describe_calls[-1]["Filters"]}
        assert filters[f"tag:{OWNER_TAG_KEY}"] == ["team-a/web"]
        assert filters[f"tag:{OWNER_UID_TAG_KEY}"] == ["uid-1"]
        assert InstanceState.TERMINATED.value not in filters["instance-state-name"]

    def test_terminated_instance_is_not_adopted(
        self, provider: Ec2Provider, session: MockSession, spec: Ec2InstanceSpec
    ) -> None:
        first = provider.create(spec, OWNER, uid="uid-1", client_token="uid-1-7")
        provider.terminate("eu-west-1", first.instance_id)
        session.clients["eu-west-1"].instances[first.instance_id]["State"] = {
            "Code": 48,
            "Name": "terminated",
        }

        second = provider.create(spec, OWNER, uid="uid-1", client_token="uid-1-9")

        assert second.instance_id != first.instance_id

    def test_instance_of_previous_object_is_not_adopted(
        self, provider: Ec2Provider, spec: Ec2InstanceSpec
    ) -> None:
        """Same name, different uid: the object was deleted and recreated."""
        first = provider.create(spec, OWNER, uid="uid-1", client_token="uid-1-7")

        second = provider.create(spec, OWNER, uid="uid-2", client_token="uid-2-3")

        assert second.instance_id != first.instance_id

    def test_lookup_errors_are_wrapped(
        self, provider: Ec2Provider, session: MockSession, spec: Ec2InstanceSpec
    ) -> None:
        session.client("ec2", region_name="eu-west-1").fail_with = client_error(
            "RequestLimitExceeded", "DescribeInstances"
        )

        with pytest.raises(ProviderError) as exc_info:
            provider.create(spec, OWNER, uid="uid-1")

        assert exc_info.value.code == "RequestLimitExceeded"
        assert session.clients["eu-west-1"].run_calls == []


class TestClientCache:
    """Per-region clients shared by executor threads."""

    def test_one_client_per_region_under_concurrency(self, session: MockSession) -> None:
        provider = Ec2Provider("eu-central-1", session=session)
        session.client_delay_seconds = 0.02
        regions = ["eu-west-1", "us-west-2"] * 8

        with ThreadPoolExecutor(max_workers=len(regions)) as pool:
            clients = list(pool.map(provider._client, regions))

        assert sorted(session.created) == ["eu-west-1", "us-west-2"]
        assert len({id(c) for c in clients}) == 2


class TestDescribe:
    """DescribeInstances."""

    def test_describe_reports_current_fields(
        self, provider: Ec2Provider, session: MockSession, spec: Ec2InstanceSpec
    ) -> None:
        created = provider.create(spec, OWNER)
        session.clients["eu-west-1"].instances[created.instance_id]["State"] = {
            "Name": "stopped"
        }

        observed = provider.describe("eu-west-1", created.instance_id)

        assert observed is not None
        assert observed.instance_id == created.instance_id
        assert observed.state == "stopped"
        assert observed.private_ip == "10.0.1.1"

    def test_unknown_instance_is_none(self, provider: Ec2Provider) -> None:
        assert provider.describe("eu-west-1", "i-0000000000000dead") is None

    def test_other_errors_raise(self, provider: Ec2Provider, session: MockSession) -> None:
        session.client("ec2", region_name="eu-west-1").fail_with = client_error(
            "UnauthorizedOperation", "DescribeInstances"
        )

        with pytest.raises(ProviderError) as exc_info:
            provider.describe("eu-west-1", "i-1")

        assert exc_info.value.code == "UnauthorizedOperation"


class TestTerminate:
    """TerminateInstances."""

    def test_terminate(
        self, provider: Ec2Provider, session: MockSession, spec: Ec2InstanceSpec
    ) -> None:
        created = provider.create(spec, OWNER)

        provider.terminate("eu-west-1", created.instance_id)

        client = session.clients["eu-west-1"]
        assert client.terminate_calls == [[created.instance_id]]
        assert client.instances[created.instance_id]["State"]["Name"] == "shutting-down"

    def test_terminate_unknown_instance_succeeds(self, provider: Ec2Provider) -> None:
        provider.terminate("eu-west-1", "i-0000000000000dead")

    def test_terminate_errors_raise(self, provider: Ec2Provider, session: MockSession) -> None:
        session.client("ec2", region_name="eu-west-1").fail_with = client_error(
            "RequestLimitExceeded", "TerminateInstances"
        )

        with pytest.raises(ProviderError):
            provider.terminate("eu-west-1", "i-1")


class TestTags:
    """Owner tagging."""

    def test_user_name_tag_wins(self) -> None:
        spec = Ec2InstanceSpec(image_id="ami-1", instance_type="t3.nano", tags={"Name": "db"})

        tags = {t["Key"]: t["Value"] for t in build_tags(spec, OWNER)}

        assert tags["Name"] == "db"
        assert tags[OWNER_TAG_KEY] == "team-a/web"

    def test_owner_tag_cannot_be_overridden(self) -> None:
        spec = Ec2InstanceSpec(
            image_id="ami-1", instance_type="t3.nano", tags={OWNER_TAG_KEY: "x/y"}
        )

        tags = {t["Key"]: t["Value"] for t in build_tags(spec, OWNER)}

        assert tags[OWNER_TAG_KEY] == "team-a/web"

    def test_uid_tag_is_added_when_known(self) -> None:
        spec = Ec2InstanceSpec(image_id="ami-1", instance_type="t3.nano")

        tags = {t["Key"]: t["Value"] for t in build_tags(spec, OWNER, uid="uid-1")}

        assert tags[OWNER_UID_TAG_KEY] == "uid-1"
        assert OWNER_UID_TAG_KEY not in {t["Key"] for t in build_tags(spec, OWNER)}
