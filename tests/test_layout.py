import pytest

from gptboot.layout import (
    BootChain,
    BootUpdateStage,
    GptInstance,
    GptState,
    is_ufs_device,
)


@pytest.mark.parametrize(
    "value",
    ["1d84000.ufshc", "soc/1d84000.ufshc", "x.ufshc"],
)
def test_ufs_boot_devices(value):
    assert is_ufs_device(value) is True


@pytest.mark.parametrize(
    "value",
    ["N/A", "", ".ufshc", "7824900.sdhci", "1d84000.ufshc0", "ufshc"],
)
def test_non_ufs_boot_devices(value):
    assert is_ufs_device(value) is False


def test_default_property_is_not_ufs():
    assert is_ufs_device() is False
    assert is_ufs_device(None) is False


@pytest.mark.parametrize(
    "value, name",
    [(1, "UPDATE_MAIN"), (2, "UPDATE_BACKUP"), (3, "UPDATE_FINALIZE")],
)
def test_update_stage_values(value, name):
    assert BootUpdateStage(value).name == name


def test_update_stages_follow_each_other():
    main = BootUpdateStage(1)
    backup = BootUpdateStage(2)
    finalize = BootUpdateStage(3)
    assert backup - main == 1
    assert finalize - backup == 1
    with pytest.raises(ValueError):
        BootUpdateStage(0)


def test_enum_lookup_by_value():
    assert GptInstance(0) is GptInstance.PRIMARY_GPT
    assert BootChain(1) is BootChain.BACKUP_BOOT
    assert GptState(2) is GptState.GPT_BAD_CRC
    with pytest.raises(ValueError):
        GptState(3)