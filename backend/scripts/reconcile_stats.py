"""
RatePro - Réconciliation des compteurs dénormalisés.
Recalcule survey.totalResponses / lastResponseAt / analytics depuis
survey_responses, et contact.surveyStats depuis invites + réponses.

Run: cd backend && python -m scripts.reconcile_stats [--tenant TENANT_ID]
"""

import argparse
import asyncio
import logging

from config import client
from services.contact_stats import recalculate_contact_stats
from services.survey_aggregates import reconcile_surveys


async def reconcile(tenant: str = None) -> dict:
    surveys = await reconcile_surveys(tenant)
    contacts = await recalculate_contact_stats(tenant)

    print("\n════════════════════════════════════")
    print("  RECONCILIATION REPORT")
    print("════════════════════════════════════")
    print(f"  Tenant:             {tenant or 'all'}")
    print(f"  Surveys scanned:    {surveys['surveys']}")
    print(f"  Surveys corrected:  {surveys['corrected']}")
    print(f"  Contacts rebuilt:   {contacts['contacts']}")
    print("════════════════════════════════════")

    return {"surveys": surveys, "contacts": contacts}


def main():
    parser = argparse.ArgumentParser(description="Rebuild survey aggregates and contact stats")
    parser.add_argument("--tenant", help="restrict to one tenant id")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    try:
        asyncio.run(reconcile(args.tenant))
    finally:
        client.close()


if __name__ == "__main__":
    main()
