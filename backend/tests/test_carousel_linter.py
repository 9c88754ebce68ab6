from orderflow.agent.corrector import auto_correct, fix_kpi_delta
from orderflow.agent.linter import lint_plan
from orderflow.schemas import CarouselPlan, Kpi
from orderflow.services.carousel_fallback import build_fallback_plan
from orderflow.services.carousel_rules import DEFAULT_GLOBALS, archetypes_for_count, merge_globals


def base_plan(slide_count=5) -> CarouselPlan:
    return build_fallback_plan("Lancement de notre outil de design", slide_count, DEFAULT_GLOBALS)


def rules(report, severity):
    return {row["rule"] for row in report.issues if row["severity"] == severity}


def test_fallback_plans_pass_lint():
    for count in (3, 5, 7):
        report = lint_plan(base_plan(count))
        assert report.valid, report.errors


def test_archetype_sequences():
    assert archetypes_for_count(5) == ["hero", "problem", "solution", "impact", "cta"]
    assert archetypes_for_count(3) == ["hero", "solution", "cta"]
    assert archetypes_for_count(4) == ["variant"] * 4


def test_empty_plan_is_invalid():
    plan = base_plan().model_copy(update={"slides": []})
    assert "R0" in rules(lint_plan(plan), "error")


def test_cta_mismatch_is_an_error():
    plan = base_plan()
    plan.slides[0].cta_primary = "Essayer maintenant"
    report = lint_plan(plan)
    assert not report.valid
    assert "R2" in rules(report, "error")


def test_missing_promise_on_solution_slide():
    plan = base_plan()
    plan.slides[2].title = "Une nouvelle façon de travailler"
    assert "R1" in rules(lint_plan(plan), "error")


def test_banned_word_is_an_error():
    plan = base_plan()
    plan.slides[1].bullets[0] = "Un rendu magique en deux clics"
    assert "R3" in rules(lint_plan(plan), "error")


def test_kpi_without_unit_is_an_error():
    plan = base_plan()
    plan.slides[3].kpis[0] = Kpi(label="Cohérence de marque", delta="+92")
    assert "R5" in rules(lint_plan(plan), "error")


def test_length_limits():
    plan = base_plan()
    plan.slides[1].title = "Trop court"
    plan.slides[4].title = "x" * 61
    report = lint_plan(plan)
    assert "R6" in rules(report, "warning")
    assert "R6" in rules(report, "error")


def test_style_and_hyperbole_are_warnings():
    plan = base_plan()
    plan.slides[1].bullets[1] = "Validations MANUELLES sans fin!!"
    plan.slides[2].bullets[1] = "Variantes incroyable en quelques minutes"
    report = lint_plan(plan)
    assert report.valid
    assert {"R4", "R8"} <= rules(report, "warning")


def test_problem_bullets_describing_the_fix_warn():
    plan = base_plan()
    plan.slides[1].bullets.append("La solution arrive enfin ici")
    report = lint_plan(plan)
    assert "R7" in rules(report, "warning")


def test_auto_correct_forces_cta_and_fixes_units():
    plan = base_plan()
    plan.slides[0].cta_primary = "Essayer maintenant"
    plan.slides[3].kpis[2] = Kpi(label="Variantes livrées", delta="3x")
    plan.slides[3].kpis[0] = Kpi(label="Cohérence de marque", delta="+92")
    plan.slides[1].bullets[0] = "b" * 80

    corrected, fixes = auto_correct(plan)
    assert corrected.slides[0].cta_primary == "Essayer Alfie"
    assert corrected.slides[3].kpis[2].delta == "3×"
    assert corrected.slides[3].kpis[0].delta == "+92%"
    assert len(corrected.slides[1].bullets[0]) == 60
    assert lint_plan(corrected).valid
    assert plan.slides[0].cta_primary == "Essayer maintenant"
    assert fixes


def test_fix_kpi_delta():
    assert fix_kpi_delta("x3") == "×3"
    assert fix_kpi_delta("-60") == "-60%"
    assert fix_kpi_delta("+12 pts") == "+12 pts"


def test_merge_globals_extends_lists_and_trims_cta():
    merged = merge_globals(
        {
            "globals": {
                "audience": "Fondateurs",
                "cta": "Réserver une démo personnalisée aujourd'hui",
                "terminology": ["Variantes", "brand kit"],
                "banned": ["gratuit"],
            }
        }
    )
    assert merged["audience"] == "Fondateurs"
    assert merged["promise"] == DEFAULT_GLOBALS["promise"]
    assert len(merged["cta"]) <= 30
    assert merged["terminology"].count("variantes") + merged["terminology"].count("Variantes") == 1
    assert "brand kit" in merged["terminology"]
    assert "gratuit" in merged["banned"]
    assert "magique" in merged["banned"]
