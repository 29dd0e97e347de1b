"""
Demonstration scripts for the order fulfillment saga.

Each function runs one scenario on a fresh system with real threads: every
service consumes from its own consumer group and the saga coordinator
reacts to what they publish. Run them to watch envelopes flow, compensation
unwind in reverse order and the saga reach its terminal state.
"""

import logging

from event_fabric.system import SCENARIOS, ScenarioResult, run_scenario

# Configure logging to see what's happening
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
)

# Per-record observability lines are noise in the demo output
logging.getLogger("observability").setLevel(logging.WARNING)


def print_result(result: ScenarioResult) -> None:
    print("\n" + "-" * 70)
    print(f"RESULT: saga {result.correlation_id[:8]} ended {result.saga_state}")
    print(f"        order {result.order_id} is {result.order_status}")
    print("-" * 70)

    print("\nEvents published for this saga:")
    for index, event_type in enumerate(result.events, start=1):
        print(f"  {index:2d}. {event_type}")

    print("\nNotifications sent:")
    for notification in result.notifications or ["(none)"]:
        print(f"  {notification}")

    if result.dead_letters:
        print(f"\nDead letters: {result.dead_letters}")


def run_scenario_demo(name: str) -> ScenarioResult:
    """Run and print one scenario."""
    scenario = SCENARIOS[name]
    print("\n" + "=" * 70)
    print(f"ORDER SAGA DEMO: {scenario.name}")
    print(f"  {scenario.description}")
    print("=" * 70 + "\n")

    result = run_scenario(name)
    print_result(result)
    return result


def run_all_demos() -> list[ScenarioResult]:
    return [run_scenario_demo(name) for name in SCENARIOS]


if __name__ == "__main__":
    run_all_demos()
