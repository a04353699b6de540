from __future__ import annotations

import pytest

from fake_crm import FakeCrm


@pytest.fixture()
def crm() -> FakeCrm:
    return FakeCrm()
