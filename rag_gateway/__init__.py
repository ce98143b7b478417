"""Ядро RAG-шлюза.

Содержит:
- config: настройки окружения и dataclass-конфиги стадий и провайдеров
- vectorstore: кэш подключения к MongoDB и стадия векторного поиска
- llm: стадии эмбеддинга и генерации поверх OpenAI-совместимого API
- engine: RAG-оркестратор с деградацией (fallback) по стадиям
- retry: общая политика повторов
- proxy: прокси Chat Completions с нормализацией и повторами
- streaming: потоковый ретранслятор SSE
- search: веб-поиск через Perplexity
"""
