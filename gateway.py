#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Тонкий лаунчер RAG-шлюза. Приложение FastAPI находится в `app/main.py`,
ядро (кэш подключения, оркестратор, прокси, ретранслятор) в `rag_gateway`.

Запуск сервера:
  uvicorn app.main:app --host 0.0.0.0 --port 8000
"""

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=False)
