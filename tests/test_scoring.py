from app.services.scoring import (
    QUOTA_MAX,
    QUOTA_MIN,
    Quotas,
    calculate_quotas,
    quota_for_share,
    score_prediction,
    tendency,
)


def test_tendency():
    assert tendency(2, 1) == "H"
    assert tendency(1, 1) == "D"
    assert tendency(0, 3) == "A"


def test_quota_for_share_bounds_and_rounding():
    assert quota_for_share(0.0) == QUOTA_MAX
    assert quota_for_share(1.0) == QUOTA_MIN
    assert quota_for_share(0.5) == 3
    assert quota_for_share(1 / 3) == 3
    assert quota_for_share(0.2) == 4
    assert quota_for_share(0.1) == QUOTA_MAX


def test_calculate_quotas_without_predictions_is_minimum():
    assert calculate_quotas([]) == Quotas(QUOTA_MIN, QUOTA_MIN, QUOTA_MIN)


def test_calculate_quotas_unpredicted_outcome_gets_max():
    quotas = calculate_quotas([(1, 0), (2, 0), (1, 1)])
    assert quotas.away == QUOTA_MAX
    assert quotas.home < quotas.away
    assert QUOTA_MIN <= quotas.draw <= QUOTA_MAX


def test_rare_correct_tendency_scores_higher_than_common_one():
    predicted = [(1, 1)] * 10 + [(1, 0)]
    quotas = calculate_quotas(predicted)

    rare = score_prediction(1, 0, 2, 1, quotas)
    common_if_draw = score_prediction(1, 1, 0, 0, quotas)
    assert rare.tendency_points > common_if_draw.tendency_points
    assert quotas.draw == QUOTA_MIN
    assert quotas.home == QUOTA_MAX


def test_score_prediction_bonuses():
    quotas = Quotas(home=3, draw=4, away=5)

    exact = score_prediction(2, 1, 2, 1, quotas)
    assert (exact.tendency_points, exact.goal_diff_bonus, exact.exact_score_bonus) == (3, 1, 3)
    assert exact.total == 7

    diff = score_prediction(3, 2, 2, 1, quotas)
    assert (diff.goal_diff_bonus, diff.exact_score_bonus, diff.total) == (1, 0, 4)

    draw = score_prediction(2, 2, 1, 1, quotas)
    assert draw.total == 4 + 1

    wrong = score_prediction(1, 2, 2, 1, quotas)
    assert wrong.total == 0


def test_points_are_capped():
    quotas = Quotas(home=6, draw=6, away=6)
    assert score_prediction(1, 0, 1, 0, quotas).total == 10
