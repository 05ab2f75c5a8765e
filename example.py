#!/usr/bin/env python3
"""
Example using the Client façade.
Runs a small enrichment workflow in the foreground, then again as a tracked background job.
"""

import asyncio

import lumeflow
from lumeflow.config import configure_logging

WORKFLOW = {
    "workflowId": "lead-enrichment",
    "name": "Lead enrichment",
    "nodes": [
        {"id": "leads", "type": "input.static", "config": {"data": [{"email": "ada@example.com"}]}},
        {"id": "enrich", "type": "example.enrich"},
        {"id": "log", "type": "output.logger", "config": {"format": "pretty"}},
    ],
    "edges": [{"source": "leads", "target": "enrich"}, {"source": "enrich", "target": "log"}],
}


class EnrichBlock(lumeflow.ServiceBlock):
    """Pretends to look up company data for every lead."""

    block_type = "example.enrich"

    async def call_service(self, config, input, context):
        await asyncio.sleep(0.1)
        return [{**lead, "company": lead["email"].split("@")[1]} for lead in input]


async def main():
    """Example demonstrating foreground runs and background jobs"""
    configure_logging()

    async with lumeflow.create(lumeflow.BackendType.IN_MEMORY, secrets={}) as client:
        client.block(EnrichBlock)

        result = await client.run(WORKFLOW)
        print(result.status, result.output)

        job = await client.submit("user-1", lumeflow.JobKind.WORKFLOW, {"workflow": WORKFLOW, "input": None})
        job = await client.wait_for(job.id, timeout=10)
        print(job.status, [event.event for event in job.timeline])


if __name__ == "__main__":
    asyncio.run(main())
