from types import SimpleNamespace

import pytest

import cleanRG


def make_rg(name, tags=None, location='eastus', state='Succeeded'):
    return SimpleNamespace(
        name=name,
        location=location,
        properties=SimpleNamespace(provisioning_state=state),
        tags=tags,
        id=f'/subscriptions/0000/resourceGroups/{name}',
    )


@pytest.fixture(autouse=True)
def no_report_or_logfile(monkeypatch, tmp_path):
    """Keep report and log file writes out of the working tree."""
    monkeypatch.setattr(cleanRG, 'xlsx_name', None)
    monkeypatch.setattr(cleanRG, 'Logfile', False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def rg():
    return make_rg
