"""
Workflow Graph Compiler — turns a declarative workflow document into an
executable graph.

  definition  document schema, parse() / load_definition()
  registry    handler / router / config-provider lookup
  behavior    static config a compiled graph carries into each turn
  routing     routers built from declarative routingRules
  compiler    preflight checks and compile_graph()
"""
