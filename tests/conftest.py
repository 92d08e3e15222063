import pytest

from dmarc_sender.config_loader import OrganizationConfig, SenderConfig, SmtpConfig
from dmarc_sender.models import AggregateReport, PublishedPolicy

XML = "<feedback><report_metadata><org_name>Example</org_name></report_metadata></feedback>"


def make_report(report_id="r1", rua="mailto:dmarc@example.com", xml=XML, **kwargs) -> AggregateReport:
    domain = kwargs.pop("domain", "example.com")
    return AggregateReport(
        report_id=report_id,
        domain=domain,
        policy_published=PublishedPolicy(domain=domain, p="reject", rua=rua),
        xml=xml,
        begin=kwargs.pop("begin", 1700000000),
        end=kwargs.pop("end", 1700086400),
        **kwargs,
    )


def make_config(**smtp) -> SenderConfig:
    return SenderConfig(
        organization=OrganizationConfig(
            org_name="Receiver Inc",
            domain="receiver.example",
            email="dmarc@receiver.example",
        ),
        smtp=SmtpConfig(**smtp),
    )


@pytest.fixture
def report_factory():
    return make_report


@pytest.fixture
def config():
    return make_config()
