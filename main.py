"""
Console Test Harness for ResolutionOrchestrator

Simple console loop: type a complaint, answer clarifying questions, see
the suggested codes. Uses the same wiring as the web app.
"""

import asyncio
import logging
import os
import sys

from app import CONFIG_ENV, MODEL_ENV, build_orchestrator
from diagnosis_resolver.contracts import ErrorKind

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"quit", "exit", "stop"}


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def print_debug_info(result):
    """Print debug information from ResolutionResult"""
    print("\n" + "-" * 60)
    print("DEBUG INFO:")
    print("-" * 60)

    debug = result.debug
    print(f"Resolution path: {debug.get('resolution_path', 'N/A')}")
    print(f"Generative attempts: {debug.get('generative_attempts', 0)} "
          f"(rejected: {debug.get('generative_rejections', 0)})")

    for error in debug.get('errors', []):
        print(f"Absorbed error: {error.kind.value} - {error.message}")

    for warning in debug.get('warnings', []):
        print(f"Warning: {warning}")

    if result.error:
        print(f"ERROR: {result.error.kind.value} - {result.error.message}")

    print("-" * 60)


def print_result(result):
    if result.suggestions:
        print("\nSuggesties:")
        for suggestion in result.suggestions:
            print(f"  {suggestion.code}  {suggestion.name}  ({suggestion.confidence:.2f})")
            print(f"        {suggestion.rationale}")
    if result.needs_clarification:
        print(f"\nSystem: {result.clarifying_question}")


def main():
    """Run console test"""
    print_separator()
    print("DIAGNOSIS CODE RESOLVER - CONSOLE TEST")
    print_separator()
    print("\nInitializing modules...")

    try:
        orchestrator = build_orchestrator(
            model_name=os.environ.get(MODEL_ENV),
            config_path=os.environ.get(CONFIG_ENV),
        )
        print("\nModules initialized successfully!")

    except Exception as e:
        print(f"\nFailed to initialize: {e}")
        import traceback
        traceback.print_exc()
        return 1

    print("Type 'quit', 'exit', or 'stop' to end\n")

    conversation_id = None
    awaiting_answer = False

    while True:
        try:
            user_input = input("> ").strip()
            if not user_input:
                print("Please enter a complaint.\n")
                continue
            if user_input.lower() in EXIT_COMMANDS:
                break

            if awaiting_answer:
                result = asyncio.run(orchestrator.resolve_clarification_answer(conversation_id, user_input))
            else:
                result = asyncio.run(orchestrator.resolve(user_input, conversation_id=conversation_id))

            print_result(result)
            print_debug_info(result)

            if result.error is not None and result.error.kind == ErrorKind.VALIDATION:
                print(f"\n{result.error.message}\n")
                continue

            conversation_id = result.conversation_id or None
            awaiting_answer = result.needs_clarification and not result.debug.get('conversation_abandoned')

            if not result.needs_clarification:
                print_separator()
                print("RESOLVED - start a new complaint")
                print_separator()
                conversation_id = None

        except KeyboardInterrupt:
            print("\n\nInterrupted by user (Ctrl+C)")
            break

    print_separator()
    print("Console test complete")
    print_separator()
    return 0


if __name__ == '__main__':
    sys.exit(main())
