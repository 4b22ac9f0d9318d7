from consensus_extractor.cli import main

raise SystemExit(main())
