import copy
import logging

import pytest
import torch


@pytest.fixture(autouse=True)
def deterministic():
    torch.manual_seed(0)
    torch.cuda.manual_seed_all(0)
    torch.use_deterministic_algorithms(True)


@pytest.fixture(autouse=True)
def restore_printoptions():
    # repr tests temporarily change the global torch printoptions
    old = copy.copy(torch._tensor_str.PRINT_OPTS)  # noqa: SLF001
    yield
    torch.set_printoptions(
        precision=old.precision, threshold=old.threshold, edgeitems=old.edgeitems, linewidth=old.linewidth
    )


@pytest.fixture(autouse=True)
def debug_logs(caplog):
    # Every cycle logs at debug level: check that formatting never fails
    caplog.set_level(logging.DEBUG, logger="adaptive_kf")


def pytest_runtest_setup(item):
    if "cuda" in item.keywords and not torch.cuda.is_available():
        pytest.skip("CUDA not available")
