"""experiment-ref 条件同期のユニットテスト"""

import pytest
from k1s0_featureflag_admin import (
    BufferedAuditLog,
    EnvironmentSetting,
    Experiment,
    ExperimentPhase,
    ExperimentRefSynchronizer,
    Flag,
    FlagPatch,
    FlagValidationError,
    InMemoryExperimentStore,
    NotFoundError,
    PermissionDeniedError,
    RbacPermissionChecker,
)
from k1s0_featureflag_admin.models import rule_from_dict

US = '{"country":"US"}'
CA = '{"country":"CA"}'


def ref_rule(experiment_id: str, condition: str | None, rule_id: str = "fr_ref") -> dict[str, object]:
    body: dict[str, object] = {
        "type": "experiment-ref",
        "id": rule_id,
        "experimentId": experiment_id,
        "variations": [{"variationId": "v0", "value": "false"}, {"variationId": "v1", "value": "true"}],
    }
    if condition is not None:
        body["condition"] = condition
    return body


def make_flag(*rules: dict[str, object]) -> Flag:
    return Flag(
        id="checkout",
        environment_settings={
            "production": EnvironmentSetting(enabled=True, rules=tuple(rule_from_dict(r) for r in rules))
        },
    )


def make_experiment(experiment_id: str = "E1", *conditions: str) -> Experiment:
    return Experiment(
        id=experiment_id,
        phases=[ExperimentPhase(name=f"phase {i}", condition=c) for i, c in enumerate(conditions)],
    )


def production_patch(*rules: dict[str, object]) -> FlagPatch:
    return FlagPatch.from_dict({"environments": {"production": {"rules": list(rules)}}})


def make_synchronizer(
    store: InMemoryExperimentStore,
    permissions: RbacPermissionChecker,
    audit: BufferedAuditLog | None = None,
) -> ExperimentRefSynchronizer:
    return ExperimentRefSynchronizer(store, permissions, audit or BufferedAuditLog())


async def test_condition_is_written_to_last_phase(admin: RbacPermissionChecker) -> None:
    """変更された条件が実験の最終フェーズにのみ書き込まれること。"""
    store = InMemoryExperimentStore()
    store.set_experiment(make_experiment("E1", '{"country":"JP"}', US))
    audit = BufferedAuditLog()
    sync = make_synchronizer(store, admin, audit)

    changes = await sync.sync(make_flag(ref_rule("E1", US)), production_patch(ref_rule("E1", CA)), "alice")

    assert len(changes) == 1
    assert changes[0].experiment_id == "E1"
    assert changes[0].phase_index == 1
    assert changes[0].previous_condition == US
    assert changes[0].new_condition == CA
    experiment = await store.get("E1")
    assert experiment is not None
    assert experiment.phases[0].condition == '{"country":"JP"}'
    assert experiment.phases[1].condition == CA

    events = await audit.flush()
    assert [e.event for e in events] == ["experiment.update"]
    assert events[0].details == {"pre": {"condition": US}, "post": {"condition": CA}}


async def test_omitted_condition_is_not_synchronized(admin: RbacPermissionChecker) -> None:
    """condition を省略したルールは同期しないこと。"""
    store = InMemoryExperimentStore()
    store.set_experiment(make_experiment("E1", US))
    changes = await make_synchronizer(store, admin).sync(
        make_flag(ref_rule("E1", US)), production_patch(ref_rule("E1", None)), "alice"
    )
    assert changes == []
    experiment = await store.get("E1")
    assert experiment is not None
    assert experiment.phases[0].condition == US


async def test_different_experiment_is_not_synchronized(admin: RbacPermissionChecker) -> None:
    """参照先の実験が変わったルールは同期しないこと。"""
    store = InMemoryExperimentStore()
    store.set_experiment(make_experiment("E1", US))
    store.set_experiment(make_experiment("E2", US))
    changes = await make_synchronizer(store, admin).sync(
        make_flag(ref_rule("E1", US)), production_patch(ref_rule("E2", CA)), "alice"
    )
    assert changes == []


async def test_phase_already_matching_writes_nothing(admin: RbacPermissionChecker) -> None:
    """フェーズ条件が既に一致していれば書き込まないこと。"""
    store = InMemoryExperimentStore()
    store.set_experiment(make_experiment("E1", CA))
    audit = BufferedAuditLog()
    changes = await make_synchronizer(store, admin, audit).sync(
        make_flag(ref_rule("E1", US)), production_patch(ref_rule("E1", CA)), "alice"
    )
    assert changes == []
    assert await audit.flush() == []


async def test_missing_experiment(admin: RbacPermissionChecker) -> None:
    """参照先の実験が存在しなければ NotFoundError。"""
    store = InMemoryExperimentStore()
    with pytest.raises(NotFoundError) as exc_info:
        await make_synchronizer(store, admin).sync(
            make_flag(), production_patch(ref_rule("E404", US)), "alice"
        )
    assert exc_info.value.entity_id == "E404"


async def test_experiment_without_phases(admin: RbacPermissionChecker) -> None:
    """フェーズを持たない実験は FlagValidationError。"""
    store = InMemoryExperimentStore()
    store.set_experiment(make_experiment("E1"))
    with pytest.raises(FlagValidationError):
        await make_synchronizer(store, admin).sync(
            make_flag(ref_rule("E1", US)), production_patch(ref_rule("E1", CA)), "alice"
        )


async def test_experiment_permission_required() -> None:
    """実験の更新権限がなければ PermissionDeniedError。"""
    store = InMemoryExperimentStore()
    store.set_experiment(make_experiment("E1", US))
    flag_editor = RbacPermissionChecker(["editor"], {"editor": ["flag:*"]})
    with pytest.raises(PermissionDeniedError):
        await make_synchronizer(store, flag_editor).sync(
            make_flag(ref_rule("E1", US)), production_patch(ref_rule("E1", CA)), "alice"
        )


async def test_failure_reports_written_changes(admin: RbacPermissionChecker) -> None:
    """途中で失敗した場合、書き込み済みの変更がエラーに添付されること。"""
    store = InMemoryExperimentStore()
    store.set_experiment(make_experiment("E1", US))
    store.set_experiment(make_experiment("E2"))
    flag = make_flag(ref_rule("E1", US, "fr_1"), ref_rule("E2", US, "fr_2"))
    patch = production_patch(ref_rule("E1", CA, "fr_1"), ref_rule("E2", CA, "fr_2"))

    with pytest.raises(FlagValidationError) as exc_info:
        await make_synchronizer(store, admin).sync(flag, patch, "alice")

    assert [c.experiment_id for c in exc_info.value.experiment_changes] == ["E1"]
    experiment = await store.get("E1")
    assert experiment is not None
    assert experiment.phases[0].condition == CA


async def test_compensate_reverts_condition(admin: RbacPermissionChecker) -> None:
    """compensate で書き込んだ条件が元に戻ること。"""
    store = InMemoryExperimentStore()
    store.set_experiment(make_experiment("E1", US))
    audit = BufferedAuditLog()
    sync = make_synchronizer(store, admin, audit)
    changes = await sync.sync(make_flag(ref_rule("E1", US)), production_patch(ref_rule("E1", CA)), "alice")

    await sync.compensate(changes, "alice")

    assert changes[0].compensated is True
    experiment = await store.get("E1")
    assert experiment is not None
    assert experiment.phases[0].condition == US
    events = await audit.flush()
    assert events[-1].details == {"pre": {"condition": CA}, "post": {"condition": US}}


async def test_compensate_skips_concurrently_changed_phase(admin: RbacPermissionChecker) -> None:
    """他者が条件を変更していれば書き戻さないこと。"""
    store = InMemoryExperimentStore()
    store.set_experiment(make_experiment("E1", US))
    sync = make_synchronizer(store, admin)
    changes = await sync.sync(make_flag(ref_rule("E1", US)), production_patch(ref_rule("E1", CA)), "alice")
    store.set_experiment(make_experiment("E1", '{"country":"MX"}'))

    await sync.compensate(changes, "alice")

    assert changes[0].compensated is False
    experiment = await store.get("E1")
    assert experiment is not None
    assert experiment.phases[0].condition == '{"country":"MX"}'
