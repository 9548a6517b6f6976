from docqa.agent.budget import PRUNE_MARKER, TokenBudgetManager
from docqa.config import TokenBudgetConfig


def test_estimate_weights_cjk_and_latin() -> None:
    assert TokenBudgetManager.estimate("") == 0
    assert TokenBudgetManager.estimate("abcd") == 1
    assert TokenBudgetManager.estimate("风险") == 3
    assert TokenBudgetManager.estimate("风险ab") == 4


def test_prune_fits_allocation_and_keeps_both_ends() -> None:
    manager = TokenBudgetManager(TokenBudgetConfig(context_tokens=500))
    context = "HEAD-" + "middle filler text " * 400 + "-NEWEST"

    assert manager.context_exceeds(context)
    pruned = manager.prune(context)

    assert manager.estimate(pruned) <= 500
    assert pruned.startswith("HEAD-")
    assert pruned.endswith("-NEWEST")
    assert PRUNE_MARKER in pruned


def test_prune_cjk_heavy_context() -> None:
    manager = TokenBudgetManager(TokenBudgetConfig(context_tokens=300))
    context = "金融危机中的风险传导" * 200

    pruned = manager.prune(context)

    assert manager.estimate(pruned) <= 300


def test_prune_is_noop_within_budget() -> None:
    manager = TokenBudgetManager(TokenBudgetConfig(context_tokens=500))

    assert manager.prune("short context") == "short context"


def test_prune_with_tiny_limit_returns_prefix() -> None:
    manager = TokenBudgetManager()
    context = "x" * 1000

    pruned = manager.prune(context, max_tokens=3)

    assert manager.estimate(pruned) <= 3
    assert context.startswith(pruned)


def test_over_budget_uses_section_allocations() -> None:
    manager = TokenBudgetManager(
        TokenBudgetConfig(
            total_tokens=100, system_tokens=50, history_tokens=50, context_tokens=50, response_tokens=0
        )
    )

    assert not manager.is_over_budget({"system": "a" * 100, "context": "b" * 100})
    assert manager.is_over_budget({"system": "a" * 200, "history": "c" * 200, "context": "b" * 200})
    assert manager.remaining_context_budget("a" * 40, "b" * 40) == 30
