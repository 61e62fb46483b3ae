#!/usr/bin/env python3
import os

import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "adspend.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
