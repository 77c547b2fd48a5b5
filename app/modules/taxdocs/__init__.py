"""
Módulo de Documentos Tributarios Electrónicos (DTE)

Motor de sincronización y emisión de documentos ante el SII vía OpenFactura:

- Tablas de códigos SII (TipoDTE, acuses)
- Construcción de borradores desde ventas POS y costos
- Emisión con política "a lo más una vez" e idempotencia por folio
- Importación de documentos recibidos con deduplicación por llave natural
- Recuperación de PDF / XML / JSON con cadena de respaldo

Tablas principales:
- tax_documents: Documentos emitidos y recibidos
- tax_document_items: Líneas de detalle
"""
