"""
Health check utilities for the learning loop.
"""

from typing import TYPE_CHECKING, Any, Dict

from .logging_config import get_logger

if TYPE_CHECKING:
    from ..services.learning_service import LearningLoop

logger = get_logger(__name__)

SERVICE_NAME = 'LearningLoop'
SERVICE_VERSION = '0.1.0'


def check_health(loop: 'LearningLoop') -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(loop)

        # Check if all components are healthy
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def _probe(name: str, service: str, probe, **details) -> Dict[str, Any]:
    try:
        return {'healthy': bool(probe()), 'service': service, **details}
    except Exception as e:
        logger.warning(f'{name} health probe failed: {e}')
        return {'healthy': False, 'service': service, 'error': str(e), **details}


def get_health_status(loop: 'LearningLoop') -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    config = loop.config
    health_status = {
        'bedrock_embed': _probe('bedrock_embed', 'Amazon Bedrock Embed', loop.embedder.health_check,
                                model=config.bedrock_embed.model_id),
        'opensearch': _probe('opensearch', 'Amazon OpenSearch', loop.opensearch.health_check,
                             endpoint=config.opensearch.endpoint),
    }

    if loop.llm is not None:
        health_status['bedrock_llm'] = _probe('bedrock_llm', 'Amazon Bedrock LLM', loop.llm.health_check,
                                              model=config.bedrock_llm.model_id)

    # Neptune is optional; only report it when provenance links are enabled
    if loop.graph is not None:
        health_status['neptune'] = _probe('neptune', 'Amazon Neptune', loop.graph.health_check,
                                          endpoint=config.neptune.endpoint)

    return health_status


def get_system_info(loop: 'LearningLoop') -> Dict[str, Any]:
    """Get system information, configuration and memory statistics.

    Returns:
        Dictionary with system information
    """
    config = loop.config
    try:
        memory_stats = loop.memory_stats()
    except Exception as e:
        logger.warning(f'Could not read memory stats: {e}')
        memory_stats = {'error': str(e)}

    try:
        interaction_stats = loop.interaction_stats()
    except Exception as e:
        logger.warning(f'Could not read interaction stats: {e}')
        interaction_stats = {'error': str(e)}

    return {
        'service_name': SERVICE_NAME,
        'version': SERVICE_VERSION,
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'bedrock_embed_model': config.bedrock_embed.model_id,
            'embedding_dimension': config.bedrock_embed.dimension,
            'curation_threshold': config.learning.curation_threshold,
            'retrieval_threshold': config.learning.retrieval_threshold,
            'provenance_links': loop.graph is not None,
            'aws_region': config.bedrock_llm.region
        },
        'memory_stats': memory_stats,
        'interaction_stats': interaction_stats,
        'pending_background_tasks': loop.worker.pending + loop.bus.worker.pending,
        'health_status': get_health_status(loop)
    }
