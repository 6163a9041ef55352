"""
Flask Web Application for the Diagnosis Code Resolver

Thin JSON transport over ResolutionOrchestrator. Every route returns the
orchestrator's result shape; validation failures map to HTTP 400.

Environment:
    DIAGNOSIS_RESOLVER_MODEL   HuggingFace model id (unset = pattern matching only)
    DIAGNOSIS_RESOLVER_CONFIG  Path to a JSON file of ResolutionConfig overrides
"""

import asyncio
import logging
import os
from typing import Optional

from flask import Flask, jsonify, request

from diagnosis_resolver.config import DEFAULT_CODE_TABLE_PATH, load_config
from diagnosis_resolver.contracts import ErrorKind
from diagnosis_resolver.core.code_table import CodeTable
from diagnosis_resolver.core.generative_resolver import GenerativeResolver
from diagnosis_resolver.core.resolution_orchestrator import ResolutionOrchestrator

logger = logging.getLogger(__name__)

MODEL_ENV = "DIAGNOSIS_RESOLVER_MODEL"
CONFIG_ENV = "DIAGNOSIS_RESOLVER_CONFIG"


def build_orchestrator(
    model_name: Optional[str] = None,
    config_path: Optional[str] = None,
    code_table_path=DEFAULT_CODE_TABLE_PATH
) -> ResolutionOrchestrator:
    """
    Load the code table, optionally the model, and wire the orchestrator.

    Model loading is expensive (~30 seconds); call once per process.
    """
    config = load_config(config_path)
    code_table = CodeTable(code_table_path)

    generative = None
    if model_name:
        # Imported here so pattern-only deployments never load torch
        import torch
        from diagnosis_resolver.utils.hf_client import DEVICE_CPU, DEVICE_CUDA, HuggingFaceClient

        device = DEVICE_CUDA if torch.cuda.is_available() else DEVICE_CPU
        logger.info(f"Initializing HuggingFace model {model_name} on {device}...")
        client = HuggingFaceClient(model_name=model_name, load_in_4bit=True, device=device)
        generative = GenerativeResolver(
            client, default_confidence=config.default_generative_confidence
        )
    else:
        logger.warning(f"{MODEL_ENV} not set; generative path disabled")

    return ResolutionOrchestrator(code_table, generative=generative, config=config)


def _status_for(result) -> int:
    if result.error is not None and result.error.kind == ErrorKind.VALIDATION:
        return 400
    return 200


def create_app(orchestrator: ResolutionOrchestrator) -> Flask:
    """Create the Flask app around an already-built orchestrator."""
    app = Flask(__name__)

    @app.route('/resolve', methods=['POST'])
    def resolve():
        """Resolve free text: {text, conversationId?, context?, timeoutSeconds?}"""
        data = request.get_json(silent=True) or {}
        orchestrator.store.cleanup_expired()

        result = asyncio.run(orchestrator.resolve(
            data.get('text'),
            conversation_id=data.get('conversationId'),
            prior_context=data.get('context'),
            deadline_seconds=data.get('timeoutSeconds'),
        ))
        return jsonify(result.to_dict()), _status_for(result)

    @app.route('/clarify', methods=['POST'])
    def clarify():
        """Answer a clarifying question: {conversationId, answerText}"""
        data = request.get_json(silent=True) or {}
        result = asyncio.run(orchestrator.resolve_clarification_answer(
            data.get('conversationId') or '',
            data.get('answerText'),
        ))
        return jsonify(result.to_dict()), _status_for(result)

    @app.route('/conversation/<conversation_id>', methods=['GET'])
    def conversation(conversation_id):
        """Conversation export with missing-information analysis"""
        analysis = orchestrator.get_conversation_analysis(conversation_id)
        return jsonify({
            'conversation': analysis['conversation'],
            'missingInfo': analysis['missing_info'],
            'suggestions': analysis['suggestions'],
        })

    @app.route('/validate', methods=['POST'])
    def validate():
        """Check one code: {code}"""
        data = request.get_json(silent=True) or {}
        outcome = orchestrator.validate_code(data.get('code'))
        return jsonify(outcome), 200 if outcome['valid'] else 400

    @app.route('/search', methods=['GET'])
    def search():
        """Codes whose description contains ?q=<term>"""
        return jsonify(orchestrator.search_codes(request.args.get('q', '')))

    @app.route('/health', methods=['GET'])
    def health():
        report = asyncio.run(orchestrator.health_check())
        report['conversations'] = orchestrator.store.get_stats()
        return jsonify(report)

    return app


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    app = create_app(build_orchestrator(
        model_name=os.environ.get(MODEL_ENV),
        config_path=os.environ.get(CONFIG_ENV),
    ))

    print("\n" + "=" * 60)
    print("DIAGNOSIS CODE RESOLVER - JSON API")
    print("=" * 60)
    print("\nServer starting on http://localhost:5000")
    print("Press Ctrl+C to stop the server")
    print("=" * 60 + "\n")

    app.run(debug=False, host='0.0.0.0', port=5000)
