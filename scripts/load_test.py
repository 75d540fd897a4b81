"""Load test: run synthetic couples through the full Luna assessment flow.

Each couple creates a session, joins it, submits random prescreening answers,
generates the question set, answers every question, and requests analysis.
Reports latency per phase and how often the fallback paths were used.
Usage: python -m scripts.load_test [--count 25] [--base-url http://localhost:8000]
"""
import argparse
import asyncio
import random
import statistics
import sys
import time
from typing import Any

import httpx


DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_COUNT = 25

FIRST_NAMES = [
    "Alex", "Sam", "Jordan", "Taylor", "Morgan", "Riley",
    "Casey", "Jamie", "Avery", "Quinn", "Rowan", "Skyler",
]

PHASES = ("session", "prescreening", "questions", "answers", "analysis")


def random_prescreening(questions: list[dict[str, Any]]) -> dict[str, Any]:
    """Pick a random answer for every prescreening question."""
    answers: dict[str, Any] = {}
    for q in questions:
        values = [o["value"] for o in q["options"]]
        if q["type"] == "multiselect":
            answers[q["id"]] = random.sample(values, random.randint(1, 3))
        else:
            answers[q["id"]] = random.choice(values)
    # Keep runs short by favouring the quicker depths.
    answers["assessment_depth"] = random.choice(["quick", "quick", "standard"])
    return answers


def random_answers(questions: list[dict[str, Any]], agreement: float) -> tuple[list[dict], list[dict]]:
    """Answer every question for both partners; ``agreement`` is the match probability."""
    p1, p2 = [], []
    for q in questions:
        values = [o["value"] for o in q["options"]]
        first = random.choice(values)
        second = first if random.random() < agreement else random.choice(values)
        p1.append({"question_id": q["id"], "value": first})
        p2.append({"question_id": q["id"], "value": second})
    return p1, p2


async def run_couple(
    client: httpx.AsyncClient,
    base_url: str,
    index: int,
    prescreening_questions: list[dict[str, Any]],
    timings: dict[str, list[float]],
) -> dict[str, Any]:
    """Drive one couple end to end; raises on any non-2xx response."""
    api = f"{base_url}/api/v1/assessments"
    name1, name2 = random.sample(FIRST_NAMES, 2)

    t0 = time.monotonic()
    resp = await client.post(api, json={"partner1_name": f"{name1} {index}"})
    resp.raise_for_status()
    session = resp.json()
    resp = await client.post(
        f"{api}/join",
        json={"session_code": session["session_code"], "partner2_name": f"{name2} {index}"},
    )
    resp.raise_for_status()
    timings["session"].append(time.monotonic() - t0)
    session_id = session["id"]

    t0 = time.monotonic()
    shared = random_prescreening(prescreening_questions)
    for partner in (1, 2):
        answers = dict(shared)
        if partner == 2:
            answers["focus_areas"] = random.sample(
                ["finances", "travel", "home", "career", "family", "lifestyle", "communication", "values"],
                2,
            )
        resp = await client.put(f"{api}/{session_id}/prescreening/{partner}", json={"answers": answers})
        resp.raise_for_status()
    timings["prescreening"].append(time.monotonic() - t0)

    t0 = time.monotonic()
    resp = await client.post(f"{api}/{session_id}/questions", timeout=120.0)
    resp.raise_for_status()
    generated = resp.json()
    timings["questions"].append(time.monotonic() - t0)

    t0 = time.monotonic()
    p1, p2 = random_answers(generated["questions"], agreement=random.uniform(0.3, 0.9))
    for partner, answers in ((1, p1), (2, p2)):
        resp = await client.put(f"{api}/{session_id}/answers/{partner}", json={"answers": answers})
        resp.raise_for_status()
    timings["answers"].append(time.monotonic() - t0)

    t0 = time.monotonic()
    resp = await client.post(f"{api}/{session_id}/analysis", timeout=120.0)
    resp.raise_for_status()
    result = resp.json()
    timings["analysis"].append(time.monotonic() - t0)

    return {
        "question_count": len(generated["questions"]),
        "questions_fallback": generated["used_fallback"],
        "alignment_score": result["alignment_score"],
        "analysis_fallback": result["used_fallback_narrative"],
    }


async def run_load_test(base_url: str, count: int) -> dict[str, Any]:
    """Run the full load test pipeline."""
    print(f"\n{'='*60}")
    print(f"Luna Assessment Load Test — {count} couples")
    print(f"Target: {base_url}")
    print(f"{'='*60}\n")

    results: dict[str, Any] = {
        "total": count,
        "completed": 0,
        "questions_fallback": 0,
        "analysis_fallback": 0,
        "scores": [],
        "question_counts": [],
        "errors": [],
        "timings": {phase: [] for phase in PHASES},
    }

    async with httpx.AsyncClient(timeout=30.0) as client:
        resp = await client.get(f"{base_url}/api/v1/assessments/prescreening/questions")
        resp.raise_for_status()
        prescreening_questions = resp.json()

        for i in range(count):
            try:
                outcome = await run_couple(client, base_url, i, prescreening_questions, results["timings"])
            except httpx.HTTPError as e:
                results["errors"].append(f"Couple {i}: {e}")
                continue

            results["completed"] += 1
            results["scores"].append(outcome["alignment_score"])
            results["question_counts"].append(outcome["question_count"])
            results["questions_fallback"] += int(outcome["questions_fallback"])
            results["analysis_fallback"] += int(outcome["analysis_fallback"])
            if (i + 1) % 5 == 0:
                print(f"  Completed {i + 1}/{count} couples")

    # Summary
    print(f"{'='*60}")
    print("LOAD TEST RESULTS")
    print(f"{'='*60}")
    print(f"Couples completed:      {results['completed']}/{count}")
    print(f"Question fallbacks:     {results['questions_fallback']}")
    print(f"Narrative fallbacks:    {results['analysis_fallback']}")
    if results["scores"]:
        print(f"Alignment score mean:   {statistics.mean(results['scores']):.1f}")
        print(f"Questions per session:  {min(results['question_counts'])}-{max(results['question_counts'])}")

    for phase, timings in results["timings"].items():
        if timings:
            print(f"\n{phase} latency:")
            print(f"  mean:   {statistics.mean(timings):.2f}s")
            print(f"  median: {statistics.median(timings):.2f}s")
            print(f"  p95:    {sorted(timings)[int(len(timings)*0.95)]:.2f}s")
            print(f"  max:    {max(timings):.2f}s")

    if results["errors"]:
        print(f"\nErrors ({len(results['errors'])}):")
        for e in results["errors"][:10]:
            print(f"  - {e}")

    print(f"\n{'='*60}\n")
    return results


def main():
    parser = argparse.ArgumentParser(description="Luna Assessment Load Test")
    parser.add_argument("--count", type=int, default=DEFAULT_COUNT, help="Number of couples to run")
    parser.add_argument("--base-url", type=str, default=DEFAULT_BASE_URL, help="API base URL")
    args = parser.parse_args()

    results = asyncio.run(run_load_test(args.base_url, args.count))

    success_rate = results["completed"] / max(results["total"], 1)
    if success_rate < 0.95:
        print(f"FAIL: Only {success_rate:.0%} success rate (target: 95%)")
        sys.exit(1)
    print(f"PASS: {success_rate:.0%} success rate")


if __name__ == "__main__":
    main()
