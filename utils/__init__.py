# Utils package - configuration, logging, money and scheduling helpers
