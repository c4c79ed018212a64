"""Graph workflow definition."""

from pydantic_graph import Graph

from branchwarden.core.log import logger
from branchwarden.workflow.session import RunSession


def create_workflow():
    """Create the scenario workflow graph.

    Every scenario runs on the same graph:
    Prepare → ExecuteStep* → Finalize, with ConcludeIntegration
    entered from Prepare when a conflict-blocked run resumes.

    Returns:
        Graph workflow with RunSession as state_type
    """
    logger.debug("Building workflow graph")

    # Import nodes (lazy to avoid circular imports)
    from branchwarden.workflow.nodes.conclude import ConcludeIntegration
    from branchwarden.workflow.nodes.execute_step import ExecuteStep
    from branchwarden.workflow.nodes.finalize import Finalize
    from branchwarden.workflow.nodes.prepare import Prepare

    return Graph(
        nodes=(
            Prepare,
            ExecuteStep,
            ConcludeIntegration,
            Finalize,
        ),
        state_type=RunSession,
    )
