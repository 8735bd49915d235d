import pytest

from app.kyudo.db import session_scope
from app.kyudo.errors import ValidationError
from app.kyudo.modules.profiles.models import Profile
from app.kyudo.modules.surveys.targets import (
    TargetCondition,
    TargetField,
    TargetGroup,
    TargetOp,
    matches_any_group,
    matches_condition,
    parse_target_groups,
    resolve_account_ids_for_target_groups,
)


def _cond(field, op, value):
    return TargetCondition(field=TargetField(field), op=TargetOp(op), value=value)


def test_eq_is_case_insensitive():
    profile = {"department": "Engineering"}
    assert matches_condition(profile, _cond("department", "eq", "engineering"))
    assert not matches_condition(profile, _cond("department", "eq", "engineer"))


def test_ilike_is_substring():
    profile = {"display_name": "Yamada Hanako"}
    assert matches_condition(profile, _cond("display_name", "ilike", "hana"))
    assert not matches_condition(profile, _cond("display_name", "ilike", "taro"))


def test_missing_or_empty_field_never_matches():
    cond = _cond("department", "ilike", "e")
    assert not matches_condition({"department": None}, cond)
    assert not matches_condition({"department": ""}, cond)
    assert not matches_condition({}, cond)


def test_groups_are_or_of_ands():
    groups = [
        TargetGroup(conditions=(_cond("generation", "eq", "60"), _cond("gender", "eq", "female"))),
        TargetGroup(conditions=(_cond("department", "eq", "law"),)),
    ]
    assert matches_any_group({"generation": "60", "gender": "female"}, groups)
    assert not matches_any_group({"generation": "60", "gender": "male"}, groups)
    assert matches_any_group({"generation": "99", "department": "Law"}, groups)


def test_no_groups_matches_everyone():
    assert matches_any_group({}, [])


def test_parse_target_groups_rejects_bad_input():
    with pytest.raises(ValidationError, match="targetGroups must be a list"):
        parse_target_groups({"conditions": []})
    with pytest.raises(ValidationError, match="at least one condition"):
        parse_target_groups([{"conditions": []}])
    with pytest.raises(ValidationError, match="invalid target field"):
        parse_target_groups([{"conditions": [{"field": "email", "op": "eq", "value": "x"}]}])
    with pytest.raises(ValidationError, match="invalid target op"):
        parse_target_groups([{"conditions": [{"field": "gender", "op": "gt", "value": "x"}]}])
    with pytest.raises(ValidationError, match="value required"):
        parse_target_groups([{"conditions": [{"field": "gender", "op": "eq", "value": "  "}]}])


def test_parse_target_groups_defaults_op_to_eq():
    groups = parse_target_groups([{"conditions": [{"field": "gender", "value": " female "}]}])
    assert groups == [TargetGroup(conditions=(_cond("gender", "eq", "female"),))]


@pytest.mark.parametrize(
    "groups",
    [
        [],
        [TargetGroup(conditions=(_cond("department", "eq", "ENGINEERING"),))],
        [TargetGroup(conditions=(_cond("department", "ilike", "a"),))],
        [TargetGroup(conditions=(_cond("generation", "eq", "60"), _cond("gender", "eq", "female")))],
        [
            TargetGroup(conditions=(_cond("generation", "eq", "61"),)),
            TargetGroup(conditions=(_cond("display_name", "ilike", "ali"),)),
        ],
        [TargetGroup(conditions=(_cond("display_name", "ilike", "%"),))],
        [TargetGroup(conditions=(_cond("display_name", "ilike", "管理"),))],
    ],
)
def test_query_resolver_agrees_with_evaluator(app, groups):
    with session_scope(app) as s:
        profiles = s.query(Profile).all()
        expected = {p.id for p in profiles if matches_any_group(p, groups)}
        assert resolve_account_ids_for_target_groups(s, groups) == expected


def test_query_resolver_excludes_empty_values(app, ids):
    groups = [TargetGroup(conditions=(_cond("department", "ilike", "a"),))]
    with session_scope(app) as s:
        resolved = resolve_account_ids_for_target_groups(s, groups)
    assert ids["bob@example.com"] in resolved
    assert ids["carol@example.com"] not in resolved
