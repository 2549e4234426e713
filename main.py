#!/usr/bin/env python3
"""
Contract Redline Reviewer

Reads a contract (.docx or plain text), reviews it against a playbook in
concurrent batches, and writes findings.json. With --accept, suggested
rewrites are patched into the in-memory document and the revised text is
written next to the findings.

The playbook is a JSON file, or a free-text rulebook (any other extension)
that the model converts first. With --generate-playbook, a playbook is
drafted from the contract itself, saved, and used for the review.

Usage:
    python main.py <contract.docx|txt> [--playbook p.json|rules.txt] [--party Provider|auto]
                   [--generate-playbook out.json] [--concurrency N] [--accept red|all]
"""

import logging
import sys
from pathlib import Path

from contract_redline.config import (
    ANTHROPIC_API_KEY, BASE_DIR, OUTPUT_DIR, OUTPUT_PATH, PLAYBOOK_PATH, default_config,
)
from contract_redline.extractors import document_blocks, load_document
from contract_redline.llm import AnthropicGenerator
from contract_redline.models import RiskLevel
from contract_redline.output import generate_summary, print_rich_summary, write_findings_json
from contract_redline.pipeline import ReviewSession, accept_finding, run_review
from contract_redline.playbook import (
    PlaybookError, detect_parties, generate_playbook_from_document, load_playbook,
    parse_playbook_from_text, save_playbook,
)


def _usage() -> None:
    print("Usage: python main.py <contract.docx|txt> [--playbook p.json|rules.txt] "
          "[--party Provider|auto] [--generate-playbook out.json] [--concurrency N] "
          "[--accept red|all]")
    print("\nExamples:")
    print("  python main.py input.docx")
    print("  python main.py input.docx --playbook playbook.json --party Customer")
    print("  python main.py input.docx --playbook rulebook.txt --party auto")
    print("  python main.py input.docx --party auto --generate-playbook output/drafted.json")
    print("  python main.py input.docx --concurrency 5 --accept red")


def main() -> None:
    # ---- Parse args ----
    args = sys.argv[1:]
    if not args or args[0] in ("-h", "--help"):
        _usage()
        sys.exit(0)

    input_arg = None
    playbook_path = PLAYBOOK_PATH
    party = ""
    generate_path = None
    concurrency = None
    accept_mode = None
    i = 0
    while i < len(args):
        if args[i] == "--playbook" and i + 1 < len(args):
            playbook_path = Path(args[i + 1])
            i += 2
        elif args[i] == "--party" and i + 1 < len(args):
            party = args[i + 1]
            i += 2
        elif args[i] == "--generate-playbook" and i + 1 < len(args):
            generate_path = Path(args[i + 1])
            i += 2
        elif args[i] == "--concurrency" and i + 1 < len(args):
            try:
                concurrency = int(args[i + 1])
            except ValueError:
                print(f"Error: --concurrency must be an integer (got '{args[i + 1]}')")
                sys.exit(1)
            i += 2
        elif args[i] == "--accept" and i + 1 < len(args):
            accept_mode = args[i + 1].lower()
            if accept_mode not in ("red", "all"):
                print(f"Error: --accept must be red or all (got '{accept_mode}')")
                sys.exit(1)
            i += 2
        else:
            input_arg = args[i]
            i += 1

    if not input_arg:
        _usage()
        sys.exit(1)

    input_path = Path(input_arg)
    if not input_path.is_absolute() and not input_path.exists():
        input_path = BASE_DIR / input_path
    if not input_path.exists():
        print(f"Error: File not found: {input_path}")
        sys.exit(1)

    if not ANTHROPIC_API_KEY:
        print("Error: ANTHROPIC_API_KEY not set. Add it to .env or the environment.")
        sys.exit(1)

    logging.basicConfig(level=logging.WARNING, format="  %(levelname)s %(name)s: %(message)s")

    try:
        config = default_config(concurrency=concurrency) if concurrency else default_config()
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    generator = AnthropicGenerator(
        model=config.model, max_tokens=config.max_tokens, timeout=config.request_timeout,
    )

    print("Contract Redline Reviewer")
    print(f"Model: {config.model}  |  Concurrency: {config.concurrency}")
    print(f"Input: {input_path}")
    print()

    # ---- Step 1: Load document ----
    print("[Step 1/5] Loading document...")
    doc = load_document(input_path)
    blocks = document_blocks(doc)
    print(f"  {len(blocks)} blocks")

    if party.lower() == "auto":
        parties = detect_parties(generator, blocks)
        party = parties[0]
        print(f"  Detected parties: {', '.join(parties)}; reviewing for {party}")

    # ---- Step 2: Load playbook ----
    print("\n[Step 2/5] Loading playbook...")
    try:
        if generate_path:
            playbook = generate_playbook_from_document(
                generator, blocks, party or "Provider", progress_callback=lambda m: print(f"  {m}"),
            )
            generate_path.parent.mkdir(parents=True, exist_ok=True)
            save_playbook(playbook, generate_path)
            print(f"  Drafted playbook written to: {generate_path}")
        elif playbook_path.suffix.lower() == ".json":
            playbook = load_playbook(playbook_path)
        else:
            if not playbook_path.exists():
                raise PlaybookError(f"Playbook not found: {playbook_path}")
            print(f"  Converting text rulebook {playbook_path.name}...")
            playbook = parse_playbook_from_text(
                generator, playbook_path.read_text(encoding="utf-8"), playbook_path.name,
            )
    except PlaybookError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"  {playbook.name}: {len(playbook.rules)} rules")

    # ---- Step 3: Review ----
    print("\n[Step 3/5] Reviewing clauses...")
    session = ReviewSession(doc, generator, config)

    def progress(_step, _total, msg):
        print(f"  {msg}")

    result = run_review(session, playbook, party=party, progress_callback=progress)
    print(f"  {len(result.findings)} findings from {result.metadata['llm_calls']} model calls")
    if result.rejections:
        print(f"  {len(result.rejections)} duplicate findings dropped")

    # ---- Step 4: Apply accepted rewrites ----
    print("\n[Step 4/5] Applying rewrites...")
    if accept_mode:
        applied = 0
        for finding in result.findings:
            if accept_mode == "red" and finding.risk_level != RiskLevel.RED:
                continue
            if not finding.suggested_text.strip():
                continue
            patch = accept_finding(session, finding)
            if patch.applied:
                applied += 1
            else:
                print(f"  Skipped {finding.target_id}: {patch.reason}")
            for w in patch.warnings:
                print(f"  Warning: {w}")
                result.warnings.append(w)
        revised_path = OUTPUT_DIR / "revised.txt"
        OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
        revised_path.write_text("\n\n".join(ref.text for ref in doc.iter_blocks()), encoding="utf-8")
        print(f"  {applied} rewrites applied; revised text written to: {revised_path}")
    else:
        print("  Skipped (use --accept red|all)")

    # ---- Step 5: Output ----
    print("\n[Step 5/5] Generating output...")
    write_findings_json(result, OUTPUT_PATH)
    print(f"  findings.json written to: {OUTPUT_PATH}")

    print_rich_summary(generate_summary(result.findings), result.findings, result.metadata,
                       result.warnings)


if __name__ == "__main__":
    main()
