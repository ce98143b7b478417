#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Шаблоны промптов и заготовленных ответов RAG."""

SYSTEM_PROMPT_WITH_CONTEXT = (
    "You are a helpful assistant. Use the following context to answer the user's question, "
    "but don't mention that you're using a context. If the context doesn't contain relevant "
    "information, just answer based on your knowledge.\n"
    "\n"
    "Context:\n"
    "{context}"
)

# Один шаблон на случай недоступной базы знаний
SYSTEM_PROMPT_FALLBACK = (
    "You are a helpful assistant. The knowledge base is temporarily unavailable, "
    "so answer the user's question based on your general knowledge. "
    "Be concise and say so if you are not sure."
)

CONTEXT_BLOCK = "Question: {instruction}\nContext: {context}\nAnswer: {response}"

EMBEDDING_FALLBACK_ANSWER = (
    'I\'m sorry, I couldn\'t look up an answer to "{query}" right now because the '
    "knowledge service is unavailable. Please try again in a moment."
)

GENERATION_FALLBACK_ANSWER = (
    'I\'m sorry, I couldn\'t generate an answer to "{query}" right now. '
    "Please try again in a moment; the sources below may still help."
)

WEB_SEARCH_SYSTEM_PROMPT = (
    "You are a helpful web search assistant. Provide accurate, detailed answers based on "
    "available information. Include all relevant sources in your response."
)
