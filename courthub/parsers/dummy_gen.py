# 本地 dummy 公告源：生成合成法院文书，离线演示/联调用

import random
import time
import uuid
from typing import List, Optional

from courthub.models import Filing

# 文书模板：覆盖不同案件类型和风险等级
TEMPLATES = [
    (
        "Notice of Power of Sale",
        "Notice of Power of Sale under the Mortgages Act, R.S.O. 1990, c. M.40. "
        "Mortgagee: Royal Bank of Canada. Mortgagor: John Smith. "
        "Property municipally known as 123 Main Street, Toronto ON M5V 2T6. "
        "Court File No. CV-24-00012345-0000",
    ),
    (
        "Receivership Order",
        "Order appointing a court appointed receiver over 45 Queen Street West, Hamilton. "
        "Applicant: First National Financial LP. Respondent: Lakeshore Holdings Inc. "
        "Court File No. CV-24-00098765-00CL",
    ),
    (
        "Construction Lien Claim",
        "Claim for lien under the Construction Act. Plaintiff: Apex Builders Ltd. "
        "Defendant: Maple Developments Inc. Holdback owing for work at "
        "88 King Road, Vaughan.",
    ),
    (
        "Condominium Corporation Arrears",
        "Toronto Standard Condominium Corporation No. 1234 v. Jane Doe. "
        "Unpaid common elements maintenance fees for unit at 10 Bay Street, Toronto.",
    ),
    (
        "Assignment in Bankruptcy",
        "Assignment in bankruptcy under the Bankruptcy and Insolvency Act. "
        "Trustee: Grant Thornton Limited. Debtor: Robert Brown of 7 Elm Avenue, Ottawa. "
        "Estate No. 31-2987654",
    ),
    (
        "Ontario Land Tribunal Appeal",
        "Planning appeal before the Ontario Land Tribunal regarding a zoning by-law "
        "amendment for 200 Lakeshore Boulevard, Mississauga.",
    ),
]


def generate_filings(count: Optional[int] = None, seed: Optional[int] = None) -> List[Filing]:
    """
    生成随机合成文书，每次 1-3 条（或指定 count），URL 唯一
    """
    rng = random.Random(seed)
    n = count if count is not None else rng.randint(1, 3)
    now = int(time.time() * 1000)

    out: List[Filing] = []
    for _ in range(n):
        title, text = rng.choice(TEMPLATES)
        fid = uuid.UUID(int=rng.getrandbits(128)).hex if seed is not None else uuid.uuid4().hex
        out.append(Filing(
            title=title,
            url=f"https://example.com/court/filings/{fid}.pdf",
            full_text=text,
            published_ms=now,
        ))
    return out
